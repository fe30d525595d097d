from __future__ import annotations

import logging
import uuid
from typing import Optional
from urllib.parse import quote

from .errors import ConflictRetry, InvalidRequest
from .models import Identity
from .proto import now_ms
from .store import Store

log = logging.getLogger("chatrelay.core.identity")

AVATAR_URL = "https://ui-avatars.com/api/?name={name}&background=25D366&color=fff"


def placeholder_name(contact_address: str) -> str:
    return f"User {contact_address}"


def placeholder_avatar(contact_address: str) -> str:
    return AVATAR_URL.format(name=quote(contact_address, safe=""))


class IdentityDirectory:
    """Maps contact addresses to stable identities, creating them on first sight."""

    def __init__(self, store: Store) -> None:
        self.store = store

    async def resolve_or_create(
        self,
        contact_address: str,
        display_name: Optional[str] = None,
        avatar_ref: Optional[str] = None,
    ) -> Identity:
        """Return the identity for contact_address, creating it if absent.

        Without a display name (implicit creation when someone starts a
        conversation with an unknown address) a placeholder name and avatar
        are derived from the address. Two racing creations for the same
        address converge on one record: the loser's insert trips the unique
        constraint and it re-reads the winner's row.
        """
        address = (contact_address or "").strip()
        if not address:
            raise InvalidRequest("contact address is required")

        existing = await self.store.find_one("identities", {"contact_address": address})
        if existing:
            return Identity(**existing)

        if display_name and display_name.strip():
            doc = {
                "id": uuid.uuid4().hex,
                "display_name": display_name.strip(),
                "contact_address": address,
                "avatar_ref": avatar_ref or "",
                "last_seen_at": now_ms(),
            }
        else:
            doc = {
                "id": uuid.uuid4().hex,
                "display_name": placeholder_name(address),
                "contact_address": address,
                "avatar_ref": avatar_ref or placeholder_avatar(address),
                "last_seen_at": 0,
            }
        try:
            created = await self.store.insert("identities", doc)
        except ConflictRetry:
            winner = await self.store.find_one("identities", {"contact_address": address})
            if winner is None:
                raise
            log.debug("Identity for %s created concurrently; using existing", address)
            return Identity(**winner)
        log.info("Created identity %s for %s", created["id"], address)
        return Identity(**created)

    async def get(self, identity_id: str) -> Optional[Identity]:
        doc = await self.store.find_by_id("identities", identity_id)
        return Identity(**doc) if doc else None

    async def find_by_address(self, contact_address: str) -> Optional[Identity]:
        doc = await self.store.find_one("identities", {"contact_address": contact_address.strip()})
        return Identity(**doc) if doc else None

    async def touch(self, identity_id: str) -> None:
        await self.store.update_by_id("identities", identity_id, {"last_seen_at": now_ms()})
