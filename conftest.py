from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from chatrelay.core.conversations import ConversationRegistry
from chatrelay.core.fanout import FanoutDispatcher
from chatrelay.core.identity import IdentityDirectory
from chatrelay.core.messages import MessageLog
from chatrelay.core.presence import PresenceRegistry
from chatrelay.core.session import SessionProtocol
from chatrelay.core.store import Store


class FakeHub:
    """Stands in for the transport: records every frame sent per connection."""

    def __init__(self) -> None:
        self.open: List[str] = []
        self.sent: Dict[str, List[dict]] = {}
        self.broken: set[str] = set()

    async def send(self, connection_id: str, frame: Dict[str, Any]) -> None:
        if connection_id in self.broken:
            raise ConnectionError(f"{connection_id} is gone")
        self.sent.setdefault(connection_id, []).append(frame)

    def connection_ids(self) -> List[str]:
        return list(self.open)

    def frames(self, connection_id: str, type_: Optional[str] = None) -> List[dict]:
        frames = self.sent.get(connection_id, [])
        return [f for f in frames if type_ is None or f["type"] == type_]

    def last(self, connection_id: str, type_: str) -> dict:
        frames = self.frames(connection_id, type_)
        assert frames, f"no {type_} frame sent to {connection_id}"
        return frames[-1]

    def clear(self) -> None:
        self.sent.clear()


@pytest_asyncio.fixture
async def store(tmp_path):
    s = Store(tmp_path / "relay.db")
    await s.open()
    try:
        yield s
    finally:
        await s.close()


@pytest.fixture
def directory(store):
    return IdentityDirectory(store)


@pytest.fixture
def conversations(store):
    return ConversationRegistry(store)


@pytest.fixture
def messages(store):
    return MessageLog(store)


@pytest.fixture
def presence():
    return PresenceRegistry()


@pytest.fixture
def hub():
    return FakeHub()


@pytest.fixture
def dispatcher(presence, hub):
    return FanoutDispatcher(presence, hub.send, hub.connection_ids, server_id="relay-test")


@pytest.fixture
def session(directory, conversations, messages, presence, dispatcher, hub):
    return SessionProtocol(
        directory,
        conversations,
        messages,
        presence,
        dispatcher,
        hub.send,
        server_id="relay-test",
    )


@pytest.fixture
def connect(session, hub):
    """Open a transport connection on the session protocol."""

    def _connect(connection_id: str) -> str:
        hub.open.append(connection_id)
        session.open(connection_id)
        return connection_id

    return _connect


@pytest.fixture
def disconnect(session, hub):
    async def _disconnect(connection_id: str) -> None:
        hub.open.remove(connection_id)
        await session.close(connection_id)

    return _disconnect
