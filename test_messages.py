"""
Tests for the GET /messages and GET /totalmsg/{address} endpoints.

Tests cover:
- Message count by address (case-insensitive)
- Pagination sorted by timestamp descending
- Count / total consistency
- Validation errors (422)
- Safe defaults when the database is unavailable
"""

import math
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from shardtalk.main import app
from shardtalk.storage import Base, get_db, get_engine


ADDRESS_MIXED = "0x" + "AbCdEf0123" * 4
ADDRESS = ADDRESS_MIXED.lower()
OTHER_ADDRESS = "0x" + "1234567890" * 4
UNKNOWN_ADDRESS = "0x" + "0" * 40


def create_message(client, message_id: int, sender: str, timestamp: int, content: str = "hello"):
    """Helper to store a message via POST /messages."""
    response = client.post(
        "/messages",
        json={
            "messageId": message_id,
            "sender": sender,
            "content": content,
            "timestamp": timestamp,
        },
    )
    assert response.status_code == 200


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=get_engine())

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=get_engine())


@pytest.fixture
def seeded_client(client):
    """Three messages from ADDRESS (ids 1..3, timestamps 100..300) and one from OTHER_ADDRESS."""
    create_message(client, 1, ADDRESS_MIXED, 100, "first")
    create_message(client, 2, ADDRESS, 200, "second")
    create_message(client, 3, ADDRESS_MIXED, 300, "third")
    create_message(client, 4, OTHER_ADDRESS, 250, "other")
    return client


@pytest.fixture
def broken_db_client(client):
    """Client whose database session fails every query."""
    session = MagicMock()
    session.query.side_effect = OperationalError("SELECT", {}, Exception("database is down"))
    app.dependency_overrides[get_db] = lambda: session
    yield client
    app.dependency_overrides.clear()


class TestMessageCount:
    """Test GET /messages?count=true."""

    def test_count_is_case_insensitive(self, seeded_client):
        response = seeded_client.get("/messages", params={"address": ADDRESS_MIXED, "count": "true"})

        assert response.status_code == 200
        data = response.json()
        assert data["address"] == ADDRESS
        assert data["messageCount"] == 3
        assert data["success"] is True
        assert "error" not in data

    def test_count_unknown_address_is_zero(self, seeded_client):
        response = seeded_client.get("/messages", params={"address": UNKNOWN_ADDRESS, "count": "true"})

        assert response.status_code == 200
        assert response.json()["messageCount"] == 0

    def test_count_matches_list_total(self, seeded_client):
        count = seeded_client.get(
            "/messages", params={"address": ADDRESS, "count": "true"}
        ).json()["messageCount"]

        for limit in (1, 2, 3, 100):
            listing = seeded_client.get("/messages", params={"address": ADDRESS, "limit": limit}).json()
            assert listing["pagination"]["total"] == count


class TestMessagesPagination:
    """Test GET /messages listing and pagination."""

    def test_first_page_most_recent_first(self, seeded_client):
        response = seeded_client.get("/messages", params={"address": ADDRESS_MIXED, "page": 1, "limit": 2})

        assert response.status_code == 200
        data = response.json()
        assert data["address"] == ADDRESS
        assert [m["messageId"] for m in data["messages"]] == [3, 2]
        assert [m["timestamp"] for m in data["messages"]] == [300, 200]
        assert data["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2}

    def test_second_page(self, seeded_client):
        response = seeded_client.get("/messages", params={"address": ADDRESS, "page": 2, "limit": 2})

        data = response.json()
        assert [m["messageId"] for m in data["messages"]] == [1]
        assert data["pagination"]["totalPages"] == 2

    def test_message_fields(self, seeded_client):
        data = seeded_client.get("/messages", params={"address": ADDRESS, "limit": 1}).json()

        msg = data["messages"][0]
        assert msg["messageId"] == 3
        assert msg["sender"] == ADDRESS
        assert msg["content"] == "third"
        assert msg["timestamp"] == 300
        assert "createdAt" in msg

    def test_default_pagination(self, seeded_client):
        data = seeded_client.get("/messages", params={"address": ADDRESS}).json()

        assert data["pagination"]["page"] == 1
        assert data["pagination"]["limit"] == 20
        assert len(data["messages"]) == 3

    def test_page_beyond_total_is_empty(self, seeded_client):
        data = seeded_client.get("/messages", params={"address": ADDRESS, "page": 5, "limit": 2}).json()

        assert data["messages"] == []
        assert data["pagination"]["total"] == 3

    def test_unknown_address_has_zero_pages(self, seeded_client):
        data = seeded_client.get("/messages", params={"address": UNKNOWN_ADDRESS}).json()

        assert data["messages"] == []
        assert data["pagination"] == {"page": 1, "limit": 20, "total": 0, "totalPages": 0}

    def test_pages_reproduce_all_messages(self, client):
        for i in range(1, 8):
            create_message(client, i, ADDRESS, 1000 + i * 10, f"message {i}")

        limit = 3
        first = client.get("/messages", params={"address": ADDRESS, "limit": limit}).json()
        total_pages = first["pagination"]["totalPages"]
        assert total_pages == math.ceil(7 / limit)

        collected = []
        for page in range(1, total_pages + 1):
            data = client.get("/messages", params={"address": ADDRESS, "page": page, "limit": limit}).json()
            collected.extend(data["messages"])

        ids = [m["messageId"] for m in collected]
        assert ids == [7, 6, 5, 4, 3, 2, 1]
        timestamps = [m["timestamp"] for m in collected]
        assert timestamps == sorted(timestamps, reverse=True)


class TestMessagesValidation:
    """Test validation errors (422) on GET /messages."""

    def test_missing_address(self, client):
        response = client.get("/messages")

        assert response.status_code == 422
        assert response.json() == {"error": "Address parameter is required"}

    @pytest.mark.parametrize("address", ["not-an-address", "0x123", "0x" + "g" * 40, "ab" * 21])
    def test_malformed_address(self, client, address):
        response = client.get("/messages", params={"address": address})

        assert response.status_code == 422
        assert response.json() == {"error": "Invalid Ethereum address format"}

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"page": 0}, {"page": -1}])
    def test_out_of_range_pagination(self, client, params):
        response = client.get("/messages", params={"address": ADDRESS, **params})

        assert response.status_code == 422
        assert "error" in response.json()


class TestReadPathDegradation:
    """Database failures on reads answer 200 with safe defaults."""

    def test_count_returns_zero_on_database_failure(self, broken_db_client):
        response = broken_db_client.get("/messages", params={"address": ADDRESS, "count": "true"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["messageCount"] == 0
        assert data["error"]

    def test_list_returns_empty_page_on_database_failure(self, broken_db_client):
        response = broken_db_client.get("/messages", params={"address": ADDRESS, "page": 2, "limit": 5})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["messages"] == []
        assert data["pagination"] == {"page": 2, "limit": 5, "total": 0, "totalPages": 0}

    def test_totalmsg_returns_zero_on_database_failure(self, broken_db_client):
        response = broken_db_client.get(f"/totalmsg/{ADDRESS}")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["totalMessages"] == 0


class TestTotalMessages:
    """Test GET /totalmsg/{address}."""

    def test_total_messages(self, seeded_client):
        response = seeded_client.get(f"/totalmsg/{ADDRESS_MIXED}")

        assert response.status_code == 200
        assert response.json() == {"success": True, "address": ADDRESS, "totalMessages": 3}
        assert "no-cache" in response.headers["cache-control"]

    def test_total_messages_invalid_address(self, client):
        response = client.get("/totalmsg/not-an-address")

        assert response.status_code == 422
        data = response.json()
        assert data["success"] is False
        assert data["totalMessages"] == 0
        assert data["address"] == "not-an-address"

    def test_response_includes_request_id_header(self, seeded_client):
        response = seeded_client.get(f"/totalmsg/{ADDRESS}")

        assert "x-request-id" in response.headers

    def test_incoming_request_id_is_echoed(self, seeded_client):
        response = seeded_client.get(f"/totalmsg/{ADDRESS}", headers={"X-Request-ID": "trace-123"})

        assert response.headers["x-request-id"] == "trace-123"
