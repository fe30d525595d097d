from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from .errors import InvalidMessage, NotFound
from .models import Message, MessageKind
from .proto import now_ms
from .store import Store

log = logging.getLogger("chatrelay.core.messages")

DEFAULT_HISTORY_LIMIT = 50
PREVIEW_CHARS = 200


def _from_doc(doc: Dict[str, Any]) -> Message:
    doc = dict(doc)
    doc.pop("seq", None)
    return Message(**doc)


class MessageLog:
    """Append-only per-conversation log with bounded history reads."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def append(
        self,
        conversation_id: str,
        sender_id: str,
        sender_display_name: str,
        body: str,
        kind: Optional[str] = MessageKind.TEXT.value,
    ) -> Message:
        if not body or not body.strip():
            raise InvalidMessage("message body is empty")
        try:
            kind_ = MessageKind(kind or MessageKind.TEXT.value)
        except ValueError:
            raise InvalidMessage(f"unsupported message kind: {kind}") from None

        # insert + conversation summary update commit or roll back together
        async with self.store.transaction() as tx:
            conv = await tx.find_by_id("conversations", conversation_id)
            if conv is None:
                raise InvalidMessage(f"unknown conversation {conversation_id}")
            if sender_id not in (conv["participant_a"], conv["participant_b"]):
                raise InvalidMessage("sender is not a participant of this conversation")

            # sent_at never goes backwards within a conversation, so sent_at
            # order and write order agree
            sent_at = max(now_ms(), conv["last_message_at"])
            doc = await tx.insert(
                "messages",
                {
                    "id": uuid.uuid4().hex,
                    "conversation_id": conversation_id,
                    "sender_id": sender_id,
                    "sender_display_name": sender_display_name,
                    "body": body,
                    "kind": kind_.value,
                    "sent_at": sent_at,
                    "read": 0,
                },
            )
            await tx.update_by_id(
                "conversations",
                conversation_id,
                {"last_message_preview": body[:PREVIEW_CHARS], "last_message_at": sent_at},
            )
        log.debug("Appended message %s to %s", doc["id"], conversation_id)
        return _from_doc(doc)

    async def history(self, conversation_id: str, limit: int = DEFAULT_HISTORY_LIMIT) -> List[Message]:
        """The most recent ``limit`` messages, oldest first."""
        async with self.store.transaction() as tx:
            if await tx.find_by_id("conversations", conversation_id) is None:
                raise NotFound(f"conversation {conversation_id} not found")
            docs = await tx.find(
                "messages",
                {"conversation_id": conversation_id},
                sort=[("seq", "desc")],
                limit=max(0, int(limit)),
            )
        docs.reverse()
        return [_from_doc(d) for d in docs]
