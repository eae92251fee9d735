"""
Query and ingestion operations over the stored messages.

The read path favors availability: a storage failure is logged and answered
with a zero/empty result flagged success=False, so callers polling it are
not pushed into retry storms. The write path reports storage failures as
ServiceUnavailableError, since a dropped write would leave a ledger-confirmed
message missing from the mirror.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from shardtalk.errors import ConflictError, ServiceUnavailableError
from shardtalk.metrics import record_message_write
from shardtalk.schemas import (
    MessageCountResponse,
    MessageResponse,
    MessagesResponse,
    PaginationInfo,
    SaveMessageRequest,
    SaveMessageResponse,
)
from shardtalk.storage import count_messages_by_sender, get_messages_by_sender, upsert_messages
from shardtalk.utils import normalize_address, total_pages, validate_pagination

logger = logging.getLogger(__name__)

# Upsert attempts when a concurrent writer wins the insert race
UPSERT_ATTEMPTS = 2


def count_messages(db: Session, sender: str) -> MessageCountResponse:
    """
    Count stored messages for a sender.

    Raises:
        ValidationError: if the address is malformed (no storage access)
    """
    address = normalize_address(sender)
    try:
        message_count = count_messages_by_sender(db, address)
    except SQLAlchemyError as e:
        logger.error(f"Failed to count messages for {address}: {e}")
        return MessageCountResponse(
            address=address,
            message_count=0,
            success=False,
            error="Failed to count messages",
        )
    return MessageCountResponse(address=address, message_count=message_count)


def list_messages(db: Session, sender: str, page: int = 1, limit: int = 20) -> MessagesResponse:
    """
    Return one page of a sender's messages, most recent first.

    Raises:
        ValidationError: if the address, page or limit is invalid (no storage access)
    """
    address = normalize_address(sender)
    validate_pagination(page, limit)

    try:
        messages, total = get_messages_by_sender(db, address, limit=limit, offset=(page - 1) * limit)
    except SQLAlchemyError as e:
        logger.error(f"Failed to fetch messages for {address}: {e}")
        return MessagesResponse(
            address=address,
            messages=[],
            pagination=PaginationInfo(page=page, limit=limit, total=0, total_pages=0),
            success=False,
            error="Failed to fetch messages",
        )

    return MessagesResponse(
        address=address,
        messages=[MessageResponse.model_validate(msg) for msg in messages],
        pagination=PaginationInfo(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages(total, limit),
        ),
    )


def save_message(db: Session, request: SaveMessageRequest) -> SaveMessageResponse:
    """
    Upsert a validated message by messageId.

    The whole document is written, transactionHash included (None when
    absent). Re-saving an identical message reports inserted=False and
    updated=False.

    Raises:
        ServiceUnavailableError: storage unreachable, caller should retry later
        ConflictError: uniqueness conflict persisted across upsert attempts
    """
    doc = {
        "message_id": request.message_id,
        "sender": request.sender,
        "content": request.content,
        "timestamp": request.timestamp,
        "transaction_hash": request.transaction_hash,
        "created_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }

    for attempt in range(1, UPSERT_ATTEMPTS + 1):
        try:
            counts = upsert_messages(db, [doc])
            break
        except IntegrityError as e:
            # Another writer inserted the same messageId between our read and write
            logger.warning(f"Upsert conflict for message {request.message_id} (attempt {attempt}): {e}")
            if attempt == UPSERT_ATTEMPTS:
                record_message_write("conflict")
                raise ConflictError(f"Conflicting write for message {request.message_id}, retry later")
        except SQLAlchemyError as e:
            logger.error(f"Failed to save message {request.message_id}: {e}")
            record_message_write("unavailable")
            raise ServiceUnavailableError("Failed to save message, database unavailable")

    if counts["inserted"]:
        result = "inserted"
    elif counts["updated"]:
        result = "updated"
    else:
        result = "unchanged"
    record_message_write(result)
    logger.info(f"Message saved: {request.message_id}, result: {result}")

    return SaveMessageResponse(
        message_id=request.message_id,
        inserted=counts["inserted"] > 0,
        updated=counts["updated"] > 0,
    )
