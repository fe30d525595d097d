import orjson
import pytest

from chatrelay.core import proto
from chatrelay.core.errors import InvalidRequest


def test_build_frame_has_fields():
    f = proto.build_frame("presenceSnapshot", "relay", "*", {"x": 1})
    assert set(f.keys()) == {"type", "from", "to", "ts", "payload"}
    assert isinstance(f["ts"], int)


def test_encode_frame_sorts_keys_compactly():
    text = proto.encode_frame({"type": "t", "from": "s", "payload": {"b": 1, "a": 2}})
    assert text == '{"from":"s","payload":{"a":2,"b":1},"type":"t"}'


def test_decode_frame_accepts_minimal_client_frame():
    env = proto.decode_frame(orjson.dumps({"type": "join", "payload": {"contact_address": "+1"}}))
    assert env.type == "join"
    assert env.from_ == ""
    assert env.payload == {"contact_address": "+1"}


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"payload": {}}', '{"type": "join", "ts": -5}'])
def test_decode_frame_rejects_malformed(raw):
    with pytest.raises(InvalidRequest):
        proto.decode_frame(raw)


def test_parse_request_validates_payload():
    req = proto.parse_request(proto.T_JOIN, {"contact_address": " +1111 ", "display_name": "Alice"})
    assert req.contact_address == "+1111"
    assert req.avatar_ref == ""
    with pytest.raises(InvalidRequest):
        proto.parse_request(proto.T_JOIN, {"contact_address": "+1111"})
    with pytest.raises(InvalidRequest):
        proto.parse_request(proto.T_FETCH_HISTORY, {})


def test_send_message_kind_is_optional():
    req = proto.parse_request(proto.T_SEND_MESSAGE, {"conversation_id": "c1", "body": "hi", "kind": None})
    assert req.kind is None
    assert proto.parse_request(proto.T_SEND_MESSAGE, {"conversation_id": "c1"}).kind is None
