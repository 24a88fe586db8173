"""weekcal: keep a Google calendar in step with a declared weekly routine."""

from __future__ import annotations

__version__ = "0.1.0"
