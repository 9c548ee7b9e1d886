"""Unit tests for signal API endpoints."""
import pytest

from tests.fakes import wait_until


OFFER = {"type": "offer", "sdp": "v=0\r\n", "video": False}


class TestSignalsAPI:
    """Test the REST signal endpoints."""

    def test_create_signal(self, test_client):
        """Test POST /api/calls/{call_id}/signals stores a row."""
        response = test_client.post(
            "/api/calls/abc/signals",
            json={"sender_id": "alice", "signal_type": "offer", "signal_data": OFFER},
        )

        assert response.status_code == 201
        data = response.json()
        assert data["call_id"] == "abc"
        assert data["sender_id"] == "alice"
        assert data["signal_type"] == "offer"
        assert data["signal_data"] == OFFER
        assert data["id"] > 0

    def test_create_signal_unknown_type(self, test_client):
        """Test that unknown signal types are rejected."""
        response = test_client.post(
            "/api/calls/abc/signals",
            json={"sender_id": "alice", "signal_type": "hello", "signal_data": {}},
        )

        assert response.status_code == 422

    def test_list_signals_in_order(self, test_client):
        """Test GET returns a call's signals oldest first."""
        test_client.post("/api/calls/abc/signals", json={"sender_id": "alice", "signal_type": "offer", "signal_data": OFFER})
        test_client.post("/api/calls/abc/signals", json={"sender_id": "bob", "signal_type": "answer", "signal_data": {}})
        test_client.post("/api/calls/xyz/signals", json={"sender_id": "carol", "signal_type": "offer", "signal_data": {}})

        response = test_client.get("/api/calls/abc/signals")

        assert response.status_code == 200
        data = response.json()
        assert [s["signal_type"] for s in data] == ["offer", "answer"]
        assert data[0]["created_at"]

    def test_list_signals_filters(self, test_client):
        """Test the signal_type and after_id filters."""
        first = test_client.post(
            "/api/calls/abc/signals",
            json={"sender_id": "alice", "signal_type": "offer", "signal_data": OFFER},
        ).json()
        for host in ("10.0.0.1", "10.0.0.2"):
            test_client.post(
                "/api/calls/abc/signals",
                json={"sender_id": "alice", "signal_type": "ice-candidate", "signal_data": {"candidate": host}},
            )

        candidates = test_client.get("/api/calls/abc/signals", params={"signal_type": "ice-candidate"}).json()
        after = test_client.get("/api/calls/abc/signals", params={"after_id": first["id"], "limit": 1}).json()

        assert len(candidates) == 2
        assert [s["signal_data"]["candidate"] for s in after] == ["10.0.0.1"]


class TestSignalFeed:
    """Test the WebSocket signal feed."""

    def test_feed_pushes_other_participants_signals(self, test_client):
        """Test that a participant receives only the other side's signals."""
        with test_client.websocket_connect("/api/calls/abc/signals/ws?user_id=bob") as websocket:
            test_client.post(
                "/api/calls/abc/signals",
                json={"sender_id": "bob", "signal_type": "answer", "signal_data": {}},
            )
            test_client.post(
                "/api/calls/abc/signals",
                json={"sender_id": "alice", "signal_type": "offer", "signal_data": OFFER},
            )

            message = websocket.receive_json()

        assert message["sender_id"] == "alice"
        assert message["signal_type"] == "offer"
        assert message["signal_data"] == OFFER

    def test_feed_stores_client_messages(self, test_client):
        """Test that messages sent over the socket become signals."""
        with test_client.websocket_connect("/api/calls/abc/signals/ws?user_id=alice") as alice:
            with test_client.websocket_connect("/api/calls/abc/signals/ws?user_id=bob") as bob:
                alice.send_json({"signal_type": "offer", "signal_data": OFFER})
                received = bob.receive_json()

        assert received["sender_id"] == "alice"
        assert received["signal_data"] == OFFER
        wait_until(lambda: len(test_client.get("/api/calls/abc/signals").json()) == 1)

    def test_feed_rejects_invalid_messages(self, test_client):
        """Test that malformed socket messages are answered with an error."""
        with test_client.websocket_connect("/api/calls/abc/signals/ws?user_id=alice") as websocket:
            websocket.send_json({"signal_type": "hello"})
            reply = websocket.receive_json()

        assert reply == {"error": "invalid signal"}
        assert test_client.get("/api/calls/abc/signals").json() == []

    def test_feed_sends_signals_stored_before_connecting(self, test_client):
        """Test that a participant joining after the offer still receives it."""
        for sender, signal_type in (("alice", "offer"), ("bob", "answer"), ("alice", "ice-candidate")):
            test_client.post(
                "/api/calls/abc/signals",
                json={"sender_id": sender, "signal_type": signal_type, "signal_data": OFFER},
            )

        with test_client.websocket_connect("/api/calls/abc/signals/ws?user_id=bob") as websocket:
            first = websocket.receive_json()
            second = websocket.receive_json()
            test_client.post(
                "/api/calls/abc/signals",
                json={"sender_id": "alice", "signal_type": "ice-candidate", "signal_data": {}},
            )
            third = websocket.receive_json()

        assert [m["signal_type"] for m in (first, second, third)] == ["offer", "ice-candidate", "ice-candidate"]
        assert len({first["id"], second["id"], third["id"]}) == 3

    def test_feed_resumes_after_id(self, test_client):
        ids = [
            test_client.post(
                "/api/calls/abc/signals",
                json={"sender_id": "alice", "signal_type": "ice-candidate", "signal_data": {"candidate": str(n)}},
            ).json()["id"]
            for n in range(3)
        ]

        with test_client.websocket_connect(f"/api/calls/abc/signals/ws?user_id=bob&after_id={ids[0]}") as websocket:
            received = [websocket.receive_json() for _ in range(2)]

        assert [m["signal_data"]["candidate"] for m in received] == ["1", "2"]

    def test_feed_survives_malformed_row(self, test_client, api_store, caplog):
        """Test that a row which cannot be sent is logged and skipped."""
        with test_client.websocket_connect("/api/calls/abc/signals/ws?user_id=bob") as websocket:
            test_client.portal.call(
                api_store.notifier.publish, "call_signals", {"id": 999, "call_id": "abc", "sender_id": "alice"}
            )
            test_client.post(
                "/api/calls/abc/signals",
                json={"sender_id": "alice", "signal_type": "offer", "signal_data": OFFER},
            )
            message = websocket.receive_json()

        assert message["signal_type"] == "offer"
        assert "Skipping malformed signal row 999" in caplog.text

    def test_feed_requires_user_id(self, test_client):
        """Test that the feed needs to know who is listening."""
        with pytest.raises(Exception):
            with test_client.websocket_connect("/api/calls/abc/signals/ws") as websocket:
                websocket.receive_json()
