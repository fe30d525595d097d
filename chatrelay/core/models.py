from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    PAYMENT_RECEIPT = "payment-receipt"


# ---------------------------------------------------------------------------
# Durable records (owned by the store; the core only holds copies)
# ---------------------------------------------------------------------------

class Identity(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    contact_address: str
    avatar_ref: str = ""
    last_seen_at: int = 0

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump()


class Conversation(BaseModel):
    """A two-party conversation. participant_ids is stored in canonical order."""

    model_config = ConfigDict(frozen=True)

    id: str
    participant_ids: List[str] = Field(min_length=2, max_length=2)
    last_message_preview: str = ""
    last_message_at: int = 0
    created_at: int = 0

    def other(self, identity_id: str) -> Optional[str]:
        if identity_id not in self.participant_ids:
            return None
        a, b = self.participant_ids
        return b if a == identity_id else a

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump()


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    conversation_id: str
    sender_id: str
    sender_display_name: str
    body: str
    kind: MessageKind = MessageKind.TEXT
    sent_at: int
    read: bool = False

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class ConversationSummary(BaseModel):
    """Per-caller view of a conversation, named after the other participant."""

    id: str
    name: str
    contact_address: str = ""
    avatar_ref: str = ""
    last_message: str = ""
    last_message_at: int = 0
    unread_count: int = 0


# ---------------------------------------------------------------------------
# Transient presence
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class PresenceEntry:
    connection_id: str
    identity_id: str
    contact_address: str
    display_name: str

    def to_wire(self) -> Dict[str, str]:
        d = asdict(self)
        d.pop("connection_id")
        return d


__all__ = [
    "MessageKind",
    "Identity",
    "Conversation",
    "Message",
    "ConversationSummary",
    "PresenceEntry",
]
