from __future__ import annotations

import time
from typing import Any, Dict, Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..utils.canonical import canonical_bytes
from .errors import InvalidRequest


# ---------------------------------------------------------------------------
# Event vocabulary
# ---------------------------------------------------------------------------

# client -> server
T_JOIN = "join"
T_START_CONVERSATION = "startConversation"
T_SEND_MESSAGE = "sendMessage"
T_FETCH_HISTORY = "fetchHistory"

# server -> client
T_JOINED = "joined"
T_CONVERSATION_SUMMARIES = "conversationSummaries"
T_CONVERSATION_STARTED = "conversationStarted"
T_NEW_MESSAGE = "newMessage"
T_MESSAGE_HISTORY = "messageHistory"
T_PRESENCE_SNAPSHOT = "presenceSnapshot"
T_ERROR = "error"

CLIENT_TYPES = {T_JOIN, T_START_CONVERSATION, T_SEND_MESSAGE, T_FETCH_HISTORY}
JOINED_ONLY_TYPES = {T_SEND_MESSAGE, T_FETCH_HISTORY}


# ---------------------------------------------------------------------------
# Envelope model
# ---------------------------------------------------------------------------

class Envelope(BaseModel):
    """JSON envelope carried over the WebSocket in both directions."""

    type: str
    from_: str = Field(default="", alias="from")
    to: str = "server"
    ts: int = 0
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("ts")
    @classmethod
    def _ts_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("timestamp must be non-negative")
        return value


# ---------------------------------------------------------------------------
# Request payloads
# ---------------------------------------------------------------------------

class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class JoinRequest(_Request):
    contact_address: str = Field(min_length=1)
    display_name: str = Field(min_length=1)
    avatar_ref: str = ""


class StartConversationRequest(_Request):
    peer_contact_address: str = Field(min_length=1)
    caller_identity_id: Optional[str] = None
    caller_contact_address: Optional[str] = None


class SendMessageRequest(_Request):
    # body is validated by the message log so an empty body maps to INVALID_MESSAGE
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=False)

    conversation_id: str = Field(min_length=1)
    body: str = ""
    kind: Optional[str] = None


class FetchHistoryRequest(_Request):
    conversation_id: str = Field(min_length=1)


REQUEST_MODELS: Dict[str, type[_Request]] = {
    T_JOIN: JoinRequest,
    T_START_CONVERSATION: StartConversationRequest,
    T_SEND_MESSAGE: SendMessageRequest,
    T_FETCH_HISTORY: FetchHistoryRequest,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def build_frame(
    type: str,
    from_: str,
    to: str,
    payload: Dict[str, Any],
    *,
    ts: int | None = None,
) -> Dict[str, Any]:
    """Create an outbound envelope dict."""

    return {
        "type": type,
        "from": from_,
        "to": to,
        "ts": now_ms() if ts is None else ts,
        "payload": payload,
    }


def encode_frame(frame: Dict[str, Any]) -> str:
    return canonical_bytes(frame).decode("utf-8")


def decode_frame(raw: str | bytes) -> Envelope:
    """Parse one inbound frame; raise InvalidRequest on malformed input."""

    try:
        data = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise InvalidRequest(f"invalid json: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidRequest("frame must be an object")
    try:
        return Envelope.model_validate(data)
    except ValidationError as exc:
        raise InvalidRequest(f"invalid envelope: {exc.error_count()} error(s)") from exc


def parse_request(type_: str, payload: Dict[str, Any]) -> _Request:
    model = REQUEST_MODELS[type_]
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(str(err["loc"][0]) for err in exc.errors() if err.get("loc"))
        raise InvalidRequest(f"malformed {type_} payload: {fields}") from exc


__all__ = [
    "Envelope",
    "JoinRequest",
    "StartConversationRequest",
    "SendMessageRequest",
    "FetchHistoryRequest",
    "CLIENT_TYPES",
    "now_ms",
    "build_frame",
    "encode_frame",
    "decode_frame",
    "parse_request",
]
