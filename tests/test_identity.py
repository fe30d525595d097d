import asyncio

import pytest

from chatrelay.core.errors import InvalidRequest
from chatrelay.core.identity import placeholder_avatar, placeholder_name


@pytest.mark.asyncio
async def test_creates_with_supplied_fields(directory):
    alice = await directory.resolve_or_create("+1111", "Alice", "https://img/alice.png")
    assert alice.display_name == "Alice"
    assert alice.contact_address == "+1111"
    assert alice.avatar_ref == "https://img/alice.png"


@pytest.mark.asyncio
async def test_existing_identity_is_returned_unchanged(directory):
    first = await directory.resolve_or_create("+1111", "Alice")
    again = await directory.resolve_or_create("+1111", "Someone Else")
    assert again.id == first.id
    assert again.display_name == "Alice"


@pytest.mark.asyncio
async def test_implicit_creation_uses_placeholder(directory):
    bob = await directory.resolve_or_create("+2222")
    assert bob.display_name == placeholder_name("+2222") == "User +2222"
    assert bob.avatar_ref == placeholder_avatar("+2222")
    assert "%2B2222" in bob.avatar_ref


@pytest.mark.asyncio
async def test_address_is_trimmed(directory):
    a = await directory.resolve_or_create("  +1111 ", "Alice")
    b = await directory.resolve_or_create("+1111")
    assert a.id == b.id


@pytest.mark.asyncio
async def test_empty_address_rejected(directory):
    with pytest.raises(InvalidRequest):
        await directory.resolve_or_create("   ", "Nobody")


@pytest.mark.asyncio
async def test_concurrent_creation_yields_single_identity(directory, store):
    results = await asyncio.gather(
        *(directory.resolve_or_create("+3333", f"Racer {i}") for i in range(20))
    )
    assert len({r.id for r in results}) == 1
    rows = await store.find("identities", {"contact_address": "+3333"})
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_touch_and_lookup(directory):
    carol = await directory.resolve_or_create("+4444")
    assert carol.last_seen_at == 0
    await directory.touch(carol.id)

    fetched = await directory.get(carol.id)
    assert fetched.last_seen_at > 0
    assert (await directory.find_by_address("+4444")).id == carol.id
    assert await directory.get("missing") is None
