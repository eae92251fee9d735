"""
Tests for the query and ingestion operations used by the routes.

Tests cover:
- Validation rejection before any storage access
- Upsert idempotency at the storage layer
- Conflict handling when a concurrent writer wins the insert race
"""

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, OperationalError

from shardtalk import messages
from shardtalk.errors import ConflictError, ServiceUnavailableError, ValidationError
from shardtalk.messages import count_messages, list_messages, save_message
from shardtalk.models import Message
from shardtalk.schemas import SaveMessageRequest


ADDRESS = "0x" + "abcdef0123" * 4


def make_request(**overrides) -> SaveMessageRequest:
    data = {"messageId": 1, "sender": ADDRESS, "content": "hello", "timestamp": 100}
    data.update(overrides)
    return SaveMessageRequest.model_validate(data)


class TestValidationBeforeStorage:

    def test_count_rejects_bad_address_without_storage_access(self):
        db = MagicMock()

        with pytest.raises(ValidationError):
            count_messages(db, "not-an-address")

        assert db.mock_calls == []

    def test_list_rejects_bad_address_without_storage_access(self):
        db = MagicMock()

        with pytest.raises(ValidationError):
            list_messages(db, "not-an-address", 1, 20)

        assert db.mock_calls == []

    @pytest.mark.parametrize("page,limit", [(0, 20), (1, 0), (1, 101)])
    def test_list_rejects_bad_pagination_without_storage_access(self, page, limit):
        db = MagicMock()

        with pytest.raises(ValidationError):
            list_messages(db, ADDRESS, page, limit)

        assert db.mock_calls == []

    def test_save_request_rejects_bad_sender(self):
        with pytest.raises(PydanticValidationError) as exc_info:
            make_request(sender="not-an-address")

        assert "sender" in str(exc_info.value)


class TestUpsert:

    def test_same_message_twice_leaves_one_record(self, db):
        save_message(db, make_request(content="first"))
        result = save_message(db, make_request(content="second"))

        assert result.inserted is False
        assert result.updated is True
        stored = db.query(Message).all()
        assert len(stored) == 1
        assert stored[0].content == "second"

    def test_count_and_list_agree(self, db):
        for i in range(1, 6):
            save_message(db, make_request(messageId=i, timestamp=100 * i))

        count = count_messages(db, ADDRESS.upper().replace("0X", "0x"))
        listing = list_messages(db, ADDRESS, page=1, limit=2)

        assert count.message_count == 5
        assert listing.pagination.total == 5
        assert listing.pagination.total_pages == 3
        assert [m.message_id for m in listing.messages] == [5, 4]


class TestConflicts:

    def test_conflict_retried_once_then_succeeds(self, monkeypatch):
        calls = []

        def flaky_upsert(db, docs):
            calls.append(docs)
            if len(calls) == 1:
                raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))
            return {"inserted": 0, "updated": 1, "unchanged": 0}

        monkeypatch.setattr(messages, "upsert_messages", flaky_upsert)

        result = save_message(MagicMock(), make_request())

        assert len(calls) == 2
        assert result.updated is True

    def test_persistent_conflict_raises(self, monkeypatch):
        def always_conflict(db, docs):
            raise IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed"))

        monkeypatch.setattr(messages, "upsert_messages", always_conflict)

        with pytest.raises(ConflictError):
            save_message(MagicMock(), make_request())

    def test_storage_failure_is_unavailable(self, monkeypatch):
        def down(db, docs):
            raise OperationalError("INSERT", {}, Exception("database is down"))

        monkeypatch.setattr(messages, "upsert_messages", down)

        with pytest.raises(ServiceUnavailableError):
            save_message(MagicMock(), make_request())
