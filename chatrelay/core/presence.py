from __future__ import annotations

import logging
import threading
from typing import Dict, List, Optional

from .models import PresenceEntry

log = logging.getLogger("chatrelay.core.presence")


class PresenceRegistry:
    """Live connection -> identity bindings (the online set).

    Transient and in-memory only. Entries are frozen value objects, so a
    snapshot can be handed out without copying. All access goes through one
    lock, which makes snapshot() linearizable with put()/remove().
    """

    def __init__(self) -> None:
        self._entries: Dict[str, PresenceEntry] = {}
        self._lock = threading.Lock()

    def put(self, connection_id: str, entry: PresenceEntry) -> None:
        if entry.connection_id != connection_id:
            raise ValueError("entry belongs to a different connection")
        with self._lock:
            self._entries[connection_id] = entry
        log.debug("Presence put %s -> %s", connection_id, entry.identity_id)

    def remove(self, connection_id: str) -> Optional[PresenceEntry]:
        with self._lock:
            entry = self._entries.pop(connection_id, None)
        if entry:
            log.debug("Presence removed %s (%s)", connection_id, entry.identity_id)
        return entry

    def find(self, connection_id: str) -> Optional[PresenceEntry]:
        with self._lock:
            return self._entries.get(connection_id)

    def snapshot(self) -> List[PresenceEntry]:
        with self._lock:
            return list(self._entries.values())

    def connections_for(self, identity_id: str) -> List[str]:
        with self._lock:
            return [cid for cid, e in self._entries.items() if e.identity_id == identity_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
