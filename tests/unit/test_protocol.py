"""
Tests for the wire models and the JSON codec.
"""

import json

import pytest

from quizsync.errors import ProtocolError
from quizsync.models import ConnectionMode, ConnectionState, Response
from quizsync.protocol import (
    BulkUpdate,
    Identify,
    PeerResponse,
    Stats,
    SubmitResponse,
    decode_client_message,
    decode_hub_message,
    encode,
)


class TestResponseModel:
    def test_wire_format_is_camel_case(self, sample_response):
        wire = sample_response.to_wire()
        assert wire == {
            "questionId": "Q1",
            "answer": "B",
            "reason": "The sample mean is unbiased",
            "userId": "u1",
            "displayName": "Ada",
            "timestamp": 100,
        }

    def test_accepts_camel_case_and_snake_case(self):
        camel = Response.model_validate({"questionId": "Q1", "answer": "A", "userId": "u1", "timestamp": 5})
        snake = Response(question_id="Q1", answer="A", user_id="u1", timestamp=5)
        assert camel == snake
        assert camel.display_name == "Anonymous"
        assert camel.reason == ""

    def test_key(self, sample_response):
        assert sample_response.key == ("Q1", "u1")

    def test_is_immutable(self, sample_response):
        with pytest.raises(Exception):
            sample_response.answer = "C"

    def test_last_write_wins_comparison(self, sample_response):
        older = sample_response.model_copy(update={"timestamp": 50})
        assert sample_response.is_newer_than(older)
        assert not older.is_newer_than(sample_response)
        assert sample_response.is_newer_than(sample_response)
        assert sample_response.is_newer_than(None)


class TestConnectionState:
    def test_default_is_offline(self):
        state = ConnectionState()
        assert state.mode == ConnectionMode.OFFLINE
        assert state.is_connected is False

    @pytest.mark.parametrize("mode", [ConnectionMode.CLOUD, ConnectionMode.LOCAL_RELAY])
    def test_connected_modes(self, mode):
        assert ConnectionState(mode=mode).is_connected

    def test_mode_values(self):
        assert [m.value for m in ConnectionMode] == ["cloud", "local", "offline"]


class TestEncode:
    def test_identify(self):
        frame = json.loads(encode(Identify(user_id="u1", display_name="Ada")))
        assert frame == {"type": "identify", "userId": "u1", "displayName": "Ada"}

    def test_bulk_update_nests_wire_responses(self, sample_response):
        frame = json.loads(encode(BulkUpdate(responses=[sample_response])))
        assert frame["type"] == "bulk_update"
        assert frame["responses"][0]["questionId"] == "Q1"
        assert frame["message"] == "Syncing existing classroom data"

    def test_stats_fields(self):
        frame = json.loads(encode(Stats(connected_clients=2, active_users=1, total_responses=7, uptime=900)))
        assert frame == {
            "type": "stats",
            "connectedClients": 2,
            "activeUsers": 1,
            "totalResponses": 7,
            "uptime": 900,
        }


class TestDecodeClientMessage:
    def test_submit_response_without_timestamp(self):
        message = decode_client_message(
            json.dumps({"type": "submit_response", "questionId": "Q1", "answer": "B", "userId": "u1"})
        )
        assert isinstance(message, SubmitResponse)
        assert message.timestamp is None

        response = message.to_response(received_at=1234)
        assert response.timestamp == 1234
        assert response.display_name == "Anonymous"

    def test_submit_response_keeps_client_timestamp(self, sample_response):
        message = decode_client_message(encode(SubmitResponse.from_response(sample_response)))
        assert message.to_response(received_at=999) == sample_response

    def test_accepts_bytes(self):
        assert decode_client_message(b'{"type": "ping"}').type == "ping"

    def test_unknown_fields_are_ignored(self):
        message = decode_client_message('{"type": "request_sync", "extra": 1}')
        assert message.type == "request_sync"

    @pytest.mark.parametrize(
        "frame, error",
        [
            ("not json", "Invalid message format"),
            ("[1, 2]", "Message has no type"),
            ('{"answer": "B"}', "Message has no type"),
            ('{"type": "teleport"}', "Unknown message type: teleport"),
            ('{"type": "welcome", "id": "x", "serverTime": 1, "activeUserCount": 0}', "Unknown message type: welcome"),
            ('{"type": "identify"}', "Invalid identify message"),
        ],
    )
    def test_rejects_bad_frames(self, frame, error):
        with pytest.raises(ProtocolError, match=error):
            decode_client_message(frame)


class TestDecodeHubMessage:
    def test_peer_response_roundtrip(self, sample_response):
        message = decode_hub_message(encode(PeerResponse.from_response(sample_response)))
        assert isinstance(message, PeerResponse)
        assert message.to_response() == sample_response

    def test_client_only_type_is_unknown(self):
        with pytest.raises(ProtocolError, match="Unknown message type: submit_response"):
            decode_hub_message('{"type": "submit_response"}')

    def test_peer_response_requires_timestamp(self):
        with pytest.raises(ProtocolError, match="Invalid peer_response message"):
            decode_hub_message('{"type": "peer_response", "questionId": "Q1", "answer": "B", "userId": "u1"}')
