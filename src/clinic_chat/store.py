"""Disk-based chat session store keyed by owner (thread-safe, atomic).

Also provides :class:`Autosaver`, the trailing-edge debounce used by the
conversation engine so that bursts of mutations coalesce into one write.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .io import atomic_write_json, ensure_dir, read_json, safe_key
from .models import Message, Session, utc_now

logger = logging.getLogger(__name__)


# -----------------------------
# SessionStore
# -----------------------------
class SessionStore:
    """One JSON document per owner holding the full message history.

    Layout:
        data_dir/
          sessions/<owner>-<digest>.json    # {"owner_id", "messages", "last_updated", "cursor"?}

    ``save`` is a full replace, never an append. Read failures degrade to
    an empty history; write failures are logged and swallowed so a failed
    autosave never interrupts the conversation.
    """

    def __init__(self, data_dir: str) -> None:
        self.root = ensure_dir(Path(data_dir) / "sessions")
        self._lock = threading.RLock()

    def path_for(self, owner_id: str) -> Path:
        """File holding owner_id's record (distinct ids never share a file)."""
        return self.root / f"{safe_key(owner_id)}.json"

    # --------- core API ----------
    def load(self, owner_id: str) -> Session:
        """Return the full session record (empty one when absent or unreadable)."""
        path = self.path_for(owner_id)
        with self._lock:
            if not path.exists():
                return Session(owner_id=owner_id)
            try:
                data = read_json(path)
                if not isinstance(data, dict):
                    raise ValueError("session document is not an object")
                session = Session.from_dict(data)
            except (OSError, ValueError, TypeError) as e:
                logger.warning("Could not read session for %s, starting empty: %s", owner_id, e)
                self._quarantine(path)
                return Session(owner_id=owner_id)
        session.owner_id = owner_id
        return session

    def get(self, owner_id: str) -> List[Message]:
        """Ordered message history for owner (possibly empty)."""
        return self.load(owner_id).messages

    def save(self, owner_id: str, messages: Sequence[Message], *, cursor: Optional[str] = None) -> bool:
        """Replace the owner's record with ``messages``. Returns False on failure."""
        session = Session(
            owner_id=owner_id,
            messages=list(messages),
            last_updated=utc_now(),
            cursor=cursor,
        )
        try:
            payload = session.to_dict()
            with self._lock:
                atomic_write_json(self.path_for(owner_id), payload)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Failed to save session for %s: %s", owner_id, e)
            return False
        logger.debug("Saved %d messages for %s", len(session.messages), owner_id)
        return True

    def clear(self, owner_id: str) -> bool:
        """Empty the owner's record. The record itself is kept."""
        return self.save(owner_id, [])

    def list_owners(self) -> List[str]:
        """Return the owner ids of all stored sessions."""
        owners: List[str] = []
        with self._lock:
            for path in self.root.glob("*.json"):
                if path.name.endswith(".corrupt.json"):
                    continue
                try:
                    data = read_json(path)
                except (OSError, ValueError) as e:
                    logger.warning("Skipping unreadable session file %s: %s", path, e)
                    continue
                if isinstance(data, dict) and data.get("owner_id"):
                    owners.append(str(data["owner_id"]))
        return sorted(owners)

    # --------- internals ----------
    def _quarantine(self, path: Path) -> None:
        # Keep the unreadable file around for inspection and start fresh.
        bad = path.with_suffix(".corrupt.json")
        try:
            path.replace(bad)
        except OSError as e:
            logger.warning("Could not move aside corrupt session file %s: %s", path, e)


# -----------------------------
# Autosaver
# -----------------------------
class Autosaver:
    """Cancel-and-reschedule timer per owner id.

    Only the most recent ``schedule`` call within ``delay`` seconds fires.
    Must be used from inside a running event loop.
    """

    def __init__(self, delay: float = 1.0) -> None:
        self.delay = max(0.0, float(delay))
        self._handles: Dict[str, asyncio.TimerHandle] = {}

    def schedule(self, owner_id: str, flush: Callable[[], Any]) -> None:
        self.cancel(owner_id)
        loop = asyncio.get_running_loop()
        self._handles[owner_id] = loop.call_later(self.delay, self._fire, owner_id, flush)

    def cancel(self, owner_id: str) -> bool:
        handle = self._handles.pop(owner_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def pending(self, owner_id: str) -> bool:
        return owner_id in self._handles

    def _fire(self, owner_id: str, flush: Callable[[], Any]) -> None:
        self._handles.pop(owner_id, None)
        try:
            flush()
        except Exception:
            logger.exception("Autosave for %s failed", owner_id)
