"""Persisted mapping from template identity keys to remote event ids.

File format::

    {
        "event_ids": {
            "Gym Workout": "a1b2c3...",
            "Lunch": "d4e5f6..."
        }
    }

A missing file is an empty store.  The file is replaced wholesale on every
save; it is never merged with what was on disk.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator, Mapping
from pathlib import Path

from weekcal.core.templates import Weekday
from weekcal.errors import IdentityStoreError

logger = logging.getLogger(__name__)

EVENT_IDS_KEY = "event_ids"


class IdentityStore(Mapping[str, str]):
    """Key → remote event id, at most one id per key."""

    def __init__(self, event_ids: Mapping[str, str] | None = None) -> None:
        self._event_ids: dict[str, str] = dict(event_ids or {})

    def __getitem__(self, key: str) -> str:
        return self._event_ids[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._event_ids)

    def __len__(self) -> int:
        return len(self._event_ids)

    def __repr__(self) -> str:
        return f"IdentityStore({self._event_ids!r})"

    def record(self, key: str, event_id: str) -> None:
        """Record *event_id* for *key*, replacing any previous id."""
        self._event_ids[key] = event_id

    def as_dict(self) -> dict[str, str]:
        return dict(self._event_ids)


def occurrence_key(title: str, weekday: Weekday, ordinal: int = 1) -> str:
    """Identity key for one occurrence of a template.

    ``ordinal`` counts repeats of the same weekday within one template.
    """
    if ordinal <= 1:
        return f"{title} [{weekday.short_name}]"
    return f"{title} [{weekday.short_name} #{ordinal}]"


def load_identity_store(path: Path) -> IdentityStore:
    """Load the store at *path*.

    Missing files load as an empty store.  Unreadable or malformed files are
    logged and also load as empty, so the next run recreates what it needs.
    """
    path = Path(path)
    if not path.exists():
        logger.info("No identity store at %s; starting empty", path)
        return IdentityStore()

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Could not read identity store %s (%s); starting empty", path, exc)
        return IdentityStore()

    raw_ids = payload.get(EVENT_IDS_KEY) if isinstance(payload, dict) else None
    if raw_ids is None:
        return IdentityStore()
    if not isinstance(raw_ids, dict):
        logger.warning(
            "Identity store %s has a malformed %r section; starting empty", path, EVENT_IDS_KEY
        )
        return IdentityStore()

    event_ids: dict[str, str] = {}
    for key, event_id in raw_ids.items():
        if not isinstance(event_id, str) or not event_id.strip():
            logger.warning("Ignoring invalid event id for %r in %s", key, path)
            continue
        event_ids[str(key)] = event_id.strip()
    return IdentityStore(event_ids)


def save_identity_store(path: Path, store: Mapping[str, str]) -> None:
    """Atomically replace the store at *path*.

    Raises
    ------
    IdentityStoreError
        If the file cannot be written.
    """
    path = Path(path)
    data = json.dumps({EVENT_IDS_KEY: dict(store)}, indent=4, ensure_ascii=False)
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(data)
            handle.write("\n")
        os.replace(tmp_name, path)
    except OSError as exc:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise IdentityStoreError(f"Could not write identity store {path}: {exc}") from exc
    logger.debug("Saved %d event id(s) to %s", len(store), path)
