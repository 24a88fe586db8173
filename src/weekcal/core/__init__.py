"""Reconciliation core: time anchoring, templates, identity store, reconciler."""
