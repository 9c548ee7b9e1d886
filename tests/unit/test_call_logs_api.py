"""Unit tests for call log API endpoints."""


def _create(client, call_id="abc", caller_id="alice", receiver_id="bob", call_type="voice"):
    return client.post(
        "/api/call-logs",
        json={"call_id": call_id, "caller_id": caller_id, "receiver_id": receiver_id, "call_type": call_type},
    )


class TestCallLogsAPI:
    """Test call log endpoints."""

    def test_create_call_log(self, test_client):
        """Test POST /api/call-logs records a ringing call."""
        response = _create(test_client, call_type="video")

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "ringing"
        assert data["call_type"] == "video"
        assert data["started_at"]
        assert data["ended_at"] is None

    def test_create_rejects_unknown_call_type(self, test_client):
        response = _create(test_client, call_type="fax")

        assert response.status_code == 422

    def test_update_call_log(self, test_client):
        """Test PATCH records the outcome."""
        call_log = _create(test_client).json()

        response = test_client.patch(
            f"/api/call-logs/{call_log['id']}", json={"status": "completed", "duration": 42}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["duration"] == 42
        assert data["ended_at"] is not None

    def test_update_rejects_unknown_status(self, test_client):
        call_log = _create(test_client).json()

        response = test_client.patch(f"/api/call-logs/{call_log['id']}", json={"status": "exploded"})

        assert response.status_code == 422

    def test_update_missing_call_log(self, test_client):
        response = test_client.patch("/api/call-logs/999", json={"status": "missed"})

        assert response.status_code == 404

    def test_history_for_user(self, test_client):
        """Test GET lists calls placed or received by a user."""
        _create(test_client, call_id="one", caller_id="alice", receiver_id="bob")
        _create(test_client, call_id="two", caller_id="bob", receiver_id="alice")
        _create(test_client, call_id="three", caller_id="carol", receiver_id="dave")

        response = test_client.get("/api/call-logs", params={"user_id": "alice"})

        assert response.status_code == 200
        assert sorted(c["call_id"] for c in response.json()) == ["one", "two"]

    def test_history_limit(self, test_client):
        for n in range(3):
            _create(test_client, call_id=f"call-{n}")

        response = test_client.get("/api/call-logs", params={"user_id": "bob", "limit": 2})

        assert len(response.json()) == 2
