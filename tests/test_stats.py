"""
Tests for the health, stats and metrics endpoints.
"""

import pytest

from chatrelay.auth import TokenVerifier
from chatrelay.errors import InvalidToken
from tests.conftest import OWNER


class TestHealth:

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"


class TestStats:

    def test_empty(self, client):
        response = client.get("/stats")

        assert response.status_code == 200
        assert response.json() == {
            "total_messages": 0,
            "connections": 0,
            "subscriptions": 0,
            "channels_with_subscribers": 0,
            "pending_frames": 0,
        }

    def test_counts_messages(self, client, channel, auth_headers):
        for i in range(3):
            client.post(f"/channels/{channel.id}/messages", json={"content": str(i)}, headers=auth_headers(OWNER))

        assert client.get("/stats").json()["total_messages"] == 3


class TestMetrics:

    def test_exposes_post_outcomes(self, client, channel, auth_headers):
        client.post(f"/channels/{channel.id}/messages", json={"content": "hi"}, headers=auth_headers(OWNER))

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "chat_messages_posted_total" in response.text
        assert 'result="created"' in response.text
        assert "http_requests_total" in response.text


class TestTokens:

    def test_issue_and_verify(self):
        verifier = TokenVerifier("s3cret")

        assert verifier.verify(verifier.issue("user.with.dots")) == "user.with.dots"

    @pytest.mark.parametrize("token", [None, "", "nodot", ".abc", "alice.", "alice.0000"])
    def test_rejects(self, token):
        with pytest.raises(InvalidToken):
            TokenVerifier("s3cret").verify(token)

    def test_other_secret(self):
        token = TokenVerifier("one").issue("alice")

        with pytest.raises(InvalidToken):
            TokenVerifier("two").verify(token)
