from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Optional

from .conversations import ConversationRegistry
from .errors import RelayError, Unauthenticated, UnknownType, NotFound
from .fanout import FanoutDispatcher, SendFn
from .identity import IdentityDirectory
from .messages import DEFAULT_HISTORY_LIMIT, MessageLog
from .models import Identity, PresenceEntry
from .presence import PresenceRegistry
from . import proto

log = logging.getLogger("chatrelay.core.session")


class SessionState(str, Enum):
    CONNECTED = "connected"   # transport up, no identity bound
    JOINED = "joined"         # presence entry installed
    CLOSED = "closed"         # terminal; presence entry removed


class SessionProtocol:
    """Per-connection state machine and request handlers.

    The runtime feeds each connection's frames in arrival order through
    handle(); failures become an ``error`` frame for that connection only.
    """

    def __init__(
        self,
        directory: IdentityDirectory,
        conversations: ConversationRegistry,
        messages: MessageLog,
        presence: PresenceRegistry,
        dispatcher: FanoutDispatcher,
        send: SendFn,
        *,
        server_id: str = "server",
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.directory = directory
        self.conversations = conversations
        self.messages = messages
        self.presence = presence
        self.dispatcher = dispatcher
        self.send = send
        self.server_id = server_id
        self.history_limit = history_limit
        self._states: Dict[str, SessionState] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, connection_id: str) -> None:
        self._states[connection_id] = SessionState.CONNECTED

    def state(self, connection_id: str) -> SessionState:
        return self._states.get(connection_id, SessionState.CLOSED)

    async def close(self, connection_id: str) -> None:
        """Disconnect, explicit or abrupt: drop the presence entry and re-announce."""
        self._states.pop(connection_id, None)
        entry = self.presence.remove(connection_id)
        if entry is None:
            return
        log.info("%s (%s) disconnected", entry.display_name, entry.contact_address)
        try:
            await self.directory.touch(entry.identity_id)
        finally:
            await self.dispatcher.broadcast_presence()

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    async def handle_raw(self, connection_id: str, raw: str | bytes) -> None:
        try:
            env = proto.decode_frame(raw)
        except RelayError as exc:
            log.warning("Rejected frame from %s: %s", connection_id, exc.detail)
            await self._send_error(connection_id, exc, ref="")
            return
        await self.handle(connection_id, env)

    async def handle(self, connection_id: str, env: proto.Envelope) -> None:
        if self.state(connection_id) is SessionState.CLOSED:
            log.debug("Dropped %s for closed connection %s", env.type, connection_id)
            return
        try:
            await self._dispatch(connection_id, env)
        except RelayError as exc:
            log.warning("%s from %s rejected: %s %s", env.type, connection_id, exc.code, exc.detail)
            await self._send_error(connection_id, exc, ref=env.type)
        except Exception:
            log.exception("Unhandled error processing %s from %s", env.type, connection_id)
            await self._send_error(connection_id, RelayError("internal error"), ref=env.type)

    async def _dispatch(self, connection_id: str, env: proto.Envelope) -> None:
        type_ = env.type
        if type_ not in proto.CLIENT_TYPES:
            raise UnknownType(f"unsupported type {type_}")
        # startConversation may name its caller explicitly; everything else needs join first
        if type_ in proto.JOINED_ONLY_TYPES and self.state(connection_id) is not SessionState.JOINED:
            raise Unauthenticated(f"{type_} requires join")
        request = proto.parse_request(type_, env.payload)

        if type_ == proto.T_JOIN:
            await self._handle_join(connection_id, request)
        elif type_ == proto.T_START_CONVERSATION:
            await self._handle_start_conversation(connection_id, request)
        elif type_ == proto.T_SEND_MESSAGE:
            await self._handle_send_message(connection_id, request)
        elif type_ == proto.T_FETCH_HISTORY:
            await self._handle_fetch_history(connection_id, request)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_join(self, connection_id: str, req: proto.JoinRequest) -> None:
        identity = await self.directory.resolve_or_create(
            req.contact_address, req.display_name, req.avatar_ref or None
        )
        await self.directory.touch(identity.id)

        entry = PresenceEntry(
            connection_id=connection_id,
            identity_id=identity.id,
            contact_address=identity.contact_address,
            display_name=identity.display_name,
        )
        self.presence.put(connection_id, entry)
        self._states[connection_id] = SessionState.JOINED
        log.info("%s (%s) joined on %s", identity.display_name, identity.contact_address, connection_id)

        await self._reply(connection_id, proto.T_JOINED, {"identity": identity.to_wire()}, to=identity.id)
        await self._send_summaries(connection_id, identity.id)
        await self.dispatcher.broadcast_presence()

    async def _handle_start_conversation(
        self, connection_id: str, req: proto.StartConversationRequest
    ) -> None:
        caller = await self._resolve_caller(connection_id, req)
        peer = await self.directory.resolve_or_create(req.peer_contact_address)
        conversation = await self.conversations.get_or_create(caller.id, peer.id)

        await self._reply(
            connection_id,
            proto.T_CONVERSATION_STARTED,
            {"conversation": conversation.to_wire(), "peer": peer.to_wire()},
            to=caller.id,
        )
        await self._send_summaries(connection_id, caller.id)

    async def _handle_send_message(self, connection_id: str, req: proto.SendMessageRequest) -> None:
        # the sender is whoever this connection joined as; payload claims are ignored
        entry = self.presence.find(connection_id)
        if entry is None:
            raise Unauthenticated("connection has no session")

        message = await self.messages.append(
            req.conversation_id,
            entry.identity_id,
            entry.display_name,
            req.body,
            req.kind,
        )
        conversation = await self.conversations.get(message.conversation_id)
        frame = proto.build_frame(
            proto.T_NEW_MESSAGE, self.server_id, conversation.id, {"message": message.to_wire()}
        )
        await self.dispatcher.broadcast(conversation, frame)

    async def _handle_fetch_history(self, connection_id: str, req: proto.FetchHistoryRequest) -> None:
        entry = self.presence.find(connection_id)
        if entry is None:
            raise Unauthenticated("connection has no session")
        conversation = await self.conversations.find(req.conversation_id)
        if conversation is None or entry.identity_id not in conversation.participant_ids:
            raise NotFound(f"conversation {req.conversation_id} not found")

        history = await self.messages.history(conversation.id, self.history_limit)
        await self._reply(
            connection_id,
            proto.T_MESSAGE_HISTORY,
            {"conversation_id": conversation.id, "messages": [m.to_wire() for m in history]},
            to=entry.identity_id,
        )

    # ------------------------------------------------------------------
    # Utilities
    # ------------------------------------------------------------------

    async def _resolve_caller(
        self, connection_id: str, req: proto.StartConversationRequest
    ) -> Identity:
        entry = self.presence.find(connection_id)
        if entry is not None:
            identity = await self.directory.get(entry.identity_id)
            if identity is not None:
                return identity
        if req.caller_identity_id:
            identity = await self.directory.get(req.caller_identity_id)
            if identity is not None:
                return identity
        if req.caller_contact_address:
            identity = await self.directory.find_by_address(req.caller_contact_address)
            if identity is not None:
                return identity
        raise Unauthenticated("unable to resolve the calling identity")

    async def _send_summaries(self, connection_id: str, identity_id: str) -> None:
        summaries = await self.conversations.list_for(identity_id)
        await self._reply(
            connection_id,
            proto.T_CONVERSATION_SUMMARIES,
            {"conversations": [s.model_dump() for s in summaries]},
            to=identity_id,
        )

    async def _reply(self, connection_id: str, type_: str, payload: Dict[str, Any], *, to: str) -> None:
        await self.send(connection_id, proto.build_frame(type_, self.server_id, to, payload))

    async def _send_error(self, connection_id: str, exc: RelayError, *, ref: str) -> None:
        entry: Optional[PresenceEntry] = self.presence.find(connection_id)
        payload = {"code": exc.code, "detail": exc.detail, "ref": ref}
        try:
            await self._reply(connection_id, proto.T_ERROR, payload, to=entry.identity_id if entry else "*")
        except Exception as send_exc:
            log.warning("Could not report %s to %s: %r", exc.code, connection_id, send_exc)


__all__ = ["SessionProtocol", "SessionState"]
