from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional

from ..utils.canonical import pair_key
from .errors import ConflictRetry, InvalidRequest, NotFound
from .models import Conversation, ConversationSummary, Identity
from .proto import now_ms
from .store import Store

log = logging.getLogger("chatrelay.core.conversations")

UNKNOWN_NAME = "Unknown"


def _from_doc(doc: Dict[str, Any]) -> Conversation:
    return Conversation(
        id=doc["id"],
        participant_ids=[doc["participant_a"], doc["participant_b"]],
        last_message_preview=doc["last_message_preview"],
        last_message_at=doc["last_message_at"],
        created_at=doc["created_at"],
    )


class ConversationRegistry:
    """Two-party conversations, deduplicated by canonical participant pair."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def get_or_create(self, identity_a: str, identity_b: str) -> Conversation:
        if not identity_a or not identity_b:
            raise InvalidRequest("both participants are required")
        if identity_a == identity_b:
            raise InvalidRequest("a conversation needs two distinct participants")

        key = pair_key(identity_a, identity_b)
        existing = await self.store.find_one("conversations", {"pair_key": key})
        if existing:
            return _from_doc(existing)

        lo, hi = sorted((identity_a, identity_b))
        doc = {
            "id": uuid.uuid4().hex,
            "participant_a": lo,
            "participant_b": hi,
            "pair_key": key,
            "last_message_preview": "",
            "last_message_at": 0,
            "created_at": now_ms(),
        }
        try:
            created = await self.store.insert("conversations", doc)
        except ConflictRetry:
            winner = await self.store.find_one("conversations", {"pair_key": key})
            if winner is None:
                raise
            log.debug("Conversation %s created concurrently; using existing", key)
            return _from_doc(winner)
        log.info("Created conversation %s between %s and %s", created["id"], lo, hi)
        return _from_doc(created)

    async def get(self, conversation_id: str) -> Conversation:
        doc = await self.store.find_by_id("conversations", conversation_id)
        if doc is None:
            raise NotFound(f"conversation {conversation_id} not found")
        return _from_doc(doc)

    async def find(self, conversation_id: str) -> Optional[Conversation]:
        doc = await self.store.find_by_id("conversations", conversation_id)
        return _from_doc(doc) if doc else None

    async def list_for(self, identity_id: str) -> List[ConversationSummary]:
        """Every conversation containing identity_id, newest activity first.

        Each summary names the other participant; if that identity cannot be
        resolved the summary falls back to "Unknown" instead of failing.
        """
        docs = await self.store.find(
            "conversations",
            {("participant_a", "participant_b"): identity_id},
            sort=[("last_message_at", "desc"), ("created_at", "desc")],
        )
        summaries: List[ConversationSummary] = []
        for doc in docs:
            conv = _from_doc(doc)
            other_id = conv.other(identity_id)
            other_doc = await self.store.find_by_id("identities", other_id) if other_id else None
            other = Identity(**other_doc) if other_doc else None
            summaries.append(
                ConversationSummary(
                    id=conv.id,
                    name=other.display_name if other else UNKNOWN_NAME,
                    contact_address=other.contact_address if other else "",
                    avatar_ref=other.avatar_ref if other else "",
                    last_message=conv.last_message_preview,
                    last_message_at=conv.last_message_at,
                )
            )
        return summaries
