"""
Tests for the /ws endpoint.

Tests cover:
- Token check on connect
- Subscribe with catch-up, then live delivery of HTTP posts
- Reconnect with last_seen_seq
- Posting, ping and error frames over the socket
- Cleanup on client disconnect and the 1013 close of a stalled client
"""

import asyncio
import logging

import pytest
from starlette.websockets import WebSocketDisconnect

from tests.conftest import MEMBER, OUTSIDER, OWNER


def post(client, channel_id, content, headers):
    response = client.post(f"/channels/{channel_id}/messages", json={"content": content}, headers=headers)
    assert response.status_code == 201
    return response.json()


def ws_url(verifier, user_id):
    return f"/ws?token={verifier.issue(user_id)}"


class TestConnect:

    def test_invalid_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws?token=alice.bad"):
                pass

        assert exc_info.value.code == 1008

    def test_missing_token_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws"):
                pass

    def test_ping(self, client, verifier):
        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "ping"})

            assert ws.receive_json() == {"type": "pong"}


class TestDelivery:

    def test_hello_world_scenario(self, client, channel, verifier, auth_headers):
        hello = post(client, channel.id, "hello", auth_headers(OWNER))
        assert hello["seq"] == 1

        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "subscribe", "channel_id": channel.id, "last_seen_seq": 0})

            caught_up = ws.receive_json()
            assert caught_up["type"] == "message"
            assert caught_up["seq"] == 1
            assert caught_up["content"] == "hello"
            assert ws.receive_json() == {
                "type": "subscribed",
                "channel_id": channel.id,
                "replayed": 1,
                "caught_up_to": 1,
            }

            post(client, channel.id, "world", auth_headers(OWNER))

            live = ws.receive_json()
            assert live["seq"] == 2
            assert live["content"] == "world"

            # Nothing else was queued: no duplicate of seq 1
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_message_payload(self, client, channel, verifier, auth_headers):
        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "subscribe", "channel_id": channel.id})
            assert ws.receive_json()["type"] == "subscribed"

            created = post(client, channel.id, "hi", auth_headers(OWNER))
            delivered = ws.receive_json()

        assert delivered == {"type": "message", **created}

    def test_reconnect_with_last_seen_seq(self, client, channel, verifier, auth_headers):
        for i in range(1, 5):
            post(client, channel.id, f"m{i}", auth_headers(OWNER))

        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "subscribe", "channel_id": channel.id, "last_seen_seq": 2})

            replayed = [ws.receive_json() for _ in range(2)]
            assert [f["seq"] for f in replayed] == [3, 4]
            assert ws.receive_json()["caught_up_to"] == 4

    def test_two_subscribers(self, client, channel, verifier, auth_headers):
        with client.websocket_connect(ws_url(verifier, OWNER)) as first, \
                client.websocket_connect(ws_url(verifier, MEMBER)) as second:
            for ws in (first, second):
                ws.send_json({"type": "subscribe", "channel_id": channel.id})
                assert ws.receive_json()["type"] == "subscribed"

            post(client, channel.id, "to everyone", auth_headers(MEMBER))

            assert first.receive_json()["content"] == "to everyone"
            assert second.receive_json()["content"] == "to everyone"

    def test_unsubscribe(self, client, channel, verifier, auth_headers):
        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "subscribe", "channel_id": channel.id})
            assert ws.receive_json()["type"] == "subscribed"
            ws.send_json({"type": "unsubscribe", "channel_id": channel.id})
            assert ws.receive_json() == {"type": "unsubscribed", "channel_id": channel.id}

            post(client, channel.id, "missed", auth_headers(OWNER))

            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}


class TestFrames:

    def test_post_over_socket(self, client, channel, verifier):
        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "subscribe", "channel_id": channel.id})
            assert ws.receive_json()["type"] == "subscribed"

            ws.send_json({"type": "post", "channel_id": channel.id, "content": "from the socket"})

            delivered = ws.receive_json()
            ack = ws.receive_json()

        assert delivered["type"] == "message"
        assert delivered["seq"] == 1
        assert ack["type"] == "ack"
        assert ack["message"]["id"] == delivered["id"]

    def test_subscribe_without_membership(self, client, channel, verifier):
        with client.websocket_connect(ws_url(verifier, OUTSIDER)) as ws:
            ws.send_json({"type": "subscribe", "channel_id": channel.id})

            error = ws.receive_json()

        assert error == {
            "type": "error",
            "code": "unauthorized",
            "detail": error["detail"],
            "channel_id": channel.id,
        }

    def test_subscribe_unknown_channel(self, client, verifier):
        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "subscribe", "channel_id": "no-such-channel"})

            assert ws.receive_json()["code"] == "not_found"

    @pytest.mark.parametrize("payload", [
        "not json",
        '{"type": "shout"}',
        '{"type": "subscribe"}',
        '{"type": "subscribe", "channel_id": "c1", "last_seen_seq": "soon"}',
    ])
    def test_malformed_frames(self, client, verifier, payload):
        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_text(payload)

            error = ws.receive_json()

        assert error["type"] == "error"
        assert error["code"] == "malformed"

    def test_post_empty_content(self, client, channel, verifier):
        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "post", "channel_id": channel.id, "content": ""})

            assert ws.receive_json()["code"] == "malformed"


class TestLifecycle:

    def test_client_disconnect_leaves_no_subscriptions(self, client, channel, verifier):
        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "subscribe", "channel_id": channel.id})
            assert ws.receive_json()["type"] == "subscribed"

            stats = client.get("/stats").json()
            assert stats["connections"] == 1
            assert stats["subscriptions"] == 1

        stats = client.get("/stats").json()
        assert stats["connections"] == 0
        assert stats["subscriptions"] == 0
        assert stats["channels_with_subscribers"] == 0

    def test_stalled_client_is_closed_with_1013(self, client, channel, verifier, auth_headers, monkeypatch):
        for i in range(10):
            post(client, channel.id, f"m{i}", auth_headers(OWNER))

        hub = client.app.state.dispatcher.hub
        monkeypatch.setattr(hub, "queue_capacity", 4)
        monkeypatch.setattr(hub, "catchup_drain_timeout", 0.05)

        async def stalled_sender(connection_id, send):
            connection = hub.get_connection(connection_id)
            while connection.is_open:
                await asyncio.sleep(0.01)

        monkeypatch.setattr(hub, "run_sender", stalled_sender)

        with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
            ws.send_json({"type": "subscribe", "channel_id": channel.id})

            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 1013
        assert exc_info.value.reason == "overflow"

        stats = client.get("/stats").json()
        assert stats["connections"] == 0
        assert stats["subscriptions"] == 0

    def test_logs_open_and_close(self, client, verifier, caplog):
        with caplog.at_level(logging.INFO, logger="chatrelay.connections"):
            with client.websocket_connect(ws_url(verifier, MEMBER)) as ws:
                ws.send_json({"type": "ping"})
                assert ws.receive_json() == {"type": "pong"}

        records = [r for r in caplog.records if r.name == "chatrelay.connections"]
        assert [r.getMessage() for r in records] == ["Connection opened", "Connection closed"]
        assert records[0].connection_id == records[1].connection_id
        assert records[1].user_id == MEMBER
        assert records[1].state == "closed"
        assert records[1].subscriptions == 0
