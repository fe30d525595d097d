from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List

from .models import Conversation
from .presence import PresenceRegistry
from .proto import T_PRESENCE_SNAPSHOT, build_frame

log = logging.getLogger("chatrelay.core.fanout")

# ---- types ----
SendFn = Callable[[str, Dict[str, Any]], Awaitable[None]]   # (connection_id, frame)
ConnectionsFn = Callable[[], Iterable[str]]                # every open transport connection


class FanoutDispatcher:
    """Delivers events to live connections, best-effort and fire-and-forget.

    Delivery is address based: a conversation event reaches every presence
    entry of every participant, so an identity joined from several devices
    gets it on each of them. Participants with no live entry simply miss it.
    """

    def __init__(
        self,
        presence: PresenceRegistry,
        send: SendFn,
        connection_ids: ConnectionsFn,
        *,
        server_id: str = "server",
    ) -> None:
        self.presence = presence
        self.send = send
        self.connection_ids = connection_ids
        self.server_id = server_id
        self._presence_lock = asyncio.Lock()

    async def broadcast(self, conversation: Conversation, frame: Dict[str, Any]) -> int:
        """Send frame to every live connection of the conversation's participants."""
        targets: List[str] = []
        for identity_id in conversation.participant_ids:
            targets.extend(self.presence.connections_for(identity_id))
        return await self._deliver(targets, frame)

    async def broadcast_presence(self) -> int:
        """Push the full online set to every open connection.

        Snapshot and delivery happen under one lock so clients observe
        snapshots in the order the online set changed.
        """
        async with self._presence_lock:
            users = [e.to_wire() for e in self.presence.snapshot()]
            frame = build_frame(T_PRESENCE_SNAPSHOT, self.server_id, "*", {"users": users})
            return await self._deliver(list(self.connection_ids()), frame)

    async def _deliver(self, connection_ids: List[str], frame: Dict[str, Any]) -> int:
        if not connection_ids:
            return 0
        results = await asyncio.gather(
            *(self.send(cid, frame) for cid in connection_ids),
            return_exceptions=True,
        )
        delivered = 0
        for cid, res in zip(connection_ids, results):
            if isinstance(res, BaseException):
                log.warning("Delivery of %s to %s failed: %r", frame.get("type"), cid, res)
            else:
                delivered += 1
        return delivered
