import asyncio

import orjson
import pytest
import pytest_asyncio
from websockets.asyncio.client import connect

from chatrelay.cmd.server import load_config
from chatrelay.core import proto
from chatrelay.core.errors import StoreUnavailable
from chatrelay.server.runtime import ServerRuntime


async def recv_until(ws, type_, timeout=5.0):
    while True:
        env = orjson.loads(await asyncio.wait_for(ws.recv(), timeout))
        if env["type"] == type_:
            return env


async def send(ws, type_, **payload):
    await ws.send(proto.encode_frame(proto.build_frame(type_, "", "server", payload)))


@pytest_asyncio.fixture
async def runtime(tmp_path):
    rt = ServerRuntime({
        "server_id": "relay-test",
        "listen": "127.0.0.1:0",
        "db_path": str(tmp_path / "relay.db"),
    })
    await rt.start()
    try:
        yield rt
    finally:
        await rt.stop()


@pytest.mark.asyncio
async def test_end_to_end_message_delivery(runtime):
    url = f"ws://127.0.0.1:{runtime.bound_port}"
    async with connect(url) as alice, connect(url) as bob:
        await send(alice, proto.T_JOIN, contact_address="+1111", display_name="Alice")
        me = (await recv_until(alice, proto.T_JOINED))["payload"]["identity"]
        await send(bob, proto.T_JOIN, contact_address="+2222", display_name="Bob")
        await recv_until(bob, proto.T_JOINED)

        await send(alice, proto.T_START_CONVERSATION, peer_contact_address="+2222")
        conv = (await recv_until(alice, proto.T_CONVERSATION_STARTED))["payload"]["conversation"]

        await send(alice, proto.T_SEND_MESSAGE, conversation_id=conv["id"], body="hello", sender_id="forged")
        got = (await recv_until(bob, proto.T_NEW_MESSAGE))["payload"]["message"]
        assert got["body"] == "hello"
        assert got["sender_id"] == me["id"]

        await send(bob, proto.T_FETCH_HISTORY, conversation_id=conv["id"])
        history = (await recv_until(bob, proto.T_MESSAGE_HISTORY))["payload"]
        assert [m["body"] for m in history["messages"]] == ["hello"]


@pytest.mark.asyncio
async def test_disconnect_updates_presence(runtime):
    url = f"ws://127.0.0.1:{runtime.bound_port}"
    async with connect(url) as alice:
        await send(alice, proto.T_JOIN, contact_address="+1111", display_name="Alice")
        await recv_until(alice, proto.T_PRESENCE_SNAPSHOT)

        async with connect(url) as bob:
            await send(bob, proto.T_JOIN, contact_address="+2222", display_name="Bob")
            snap = await recv_until(alice, proto.T_PRESENCE_SNAPSHOT)
            assert len(snap["payload"]["users"]) == 2

        snap = await recv_until(alice, proto.T_PRESENCE_SNAPSHOT)
        assert [u["display_name"] for u in snap["payload"]["users"]] == ["Alice"]


@pytest.mark.asyncio
async def test_aborted_connection_leaves_presence(runtime):
    url = f"ws://127.0.0.1:{runtime.bound_port}"
    async with connect(url) as alice:
        await send(alice, proto.T_JOIN, contact_address="+1111", display_name="Alice")
        await recv_until(alice, proto.T_PRESENCE_SNAPSHOT)

        bob = await connect(url)
        await send(bob, proto.T_JOIN, contact_address="+2222", display_name="Bob")
        snap = await recv_until(alice, proto.T_PRESENCE_SNAPSHOT)
        assert len(snap["payload"]["users"]) == 2

        bob.transport.abort()

        snap = await recv_until(alice, proto.T_PRESENCE_SNAPSHOT)
        assert [u["display_name"] for u in snap["payload"]["users"]] == ["Alice"]
        assert len(runtime.presence) == 1

@pytest.mark.asyncio
async def test_health_endpoint(runtime):
    reader, writer = await asyncio.open_connection("127.0.0.1", runtime.bound_port)
    writer.write(b"GET /health HTTP/1.1\r\nHost: localhost\r\n\r\n")
    await writer.drain()
    status = await asyncio.wait_for(reader.readline(), 5)
    writer.close()
    assert b"200" in status


@pytest.mark.asyncio
async def test_start_aborts_without_storage(tmp_path):
    rt = ServerRuntime({"listen": "127.0.0.1:0", "db_path": str(tmp_path)})
    with pytest.raises(StoreUnavailable):
        await rt.start()


def test_load_config_applies_env_overrides(tmp_path):
    cfg_file = tmp_path / "server.yaml"
    cfg_file.write_text("server_id: relay-a\nlisten: '0.0.0.0:7001'\nhistory_limit: 20\n")

    cfg = load_config(cfg_file, {"CHATRELAY_DB_PATH": "/tmp/other.db", "CHATRELAY_LISTEN": ""})
    assert cfg["server_id"] == "relay-a"
    assert cfg["listen"] == "0.0.0.0:7001"
    assert cfg["db_path"] == "/tmp/other.db"
    assert cfg["history_limit"] == 20

    assert load_config(None, {}) == {}
