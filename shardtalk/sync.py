"""
Sync messages from the chat contract into the database.

Walks the ledger in fixed-size batches from offset 0 (or --start-offset) and
upserts every record keyed by messageId. Runs are safe to repeat or overlap:
already-synced batches come back as unchanged. A failed batch aborts the run;
batches committed before it stay committed.

Usage:
    shardtalk-sync [--batch-size 50] [--start-offset 0]
    python -m shardtalk.sync
"""

import argparse
import logging
import sys
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shardtalk.chain import ContractChainReader, LedgerRecord
from shardtalk.config import get_settings
from shardtalk.errors import SyncError
from shardtalk.logging_utils import setup_logging
from shardtalk.metrics import record_sync_counts
from shardtalk.storage import close_db, count_distinct_senders, init_db, new_session, upsert_messages
from shardtalk.utils import MAX_INT64

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


@dataclass
class SyncReport:
    total: int = 0
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    unique_senders: int = 0


def ledger_record_to_doc(record: LedgerRecord) -> dict:
    """Map a ledger record to the stored message shape."""
    message_id = int(record.message_id)
    timestamp = int(record.timestamp)
    if not (0 <= message_id <= MAX_INT64 and 0 < timestamp <= MAX_INT64):
        raise SyncError(f"Ledger record {message_id} has an out-of-range id or timestamp")
    return {
        "message_id": message_id,
        "sender": record.sender.lower(),
        "content": record.content,
        "timestamp": timestamp,
        "created_at": datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
    }


class MessageSynchronizer:
    """
    Reconciles the messages table with the ledger.

    Args:
        reader: Chain Reader exposing get_total_message_count() and
            get_messages(start, count)
        session_factory: Callable returning a new database session
        batch_size: Number of ledger records fetched and upserted per batch
    """

    def __init__(
        self,
        reader,
        session_factory: Callable[[], Session] = new_session,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.reader = reader
        self.session_factory = session_factory
        self.batch_size = batch_size

    def _read_total(self) -> int:
        try:
            return int(self.reader.get_total_message_count())
        except Exception as e:
            raise SyncError(f"Failed to read message count from ledger: {e}") from e

    def _read_batch(self, start: int, count: int) -> List[LedgerRecord]:
        try:
            return list(self.reader.get_messages(start, count))
        except Exception as e:
            raise SyncError(f"Failed to read ledger messages {start}..{start + count - 1}: {e}") from e

    def run(self, start_offset: int = 0) -> SyncReport:
        """
        Run one full sync pass.

        Raises:
            SyncError: if the ledger or the database fails for any batch
        """
        total = self._read_total()
        report = SyncReport(total=total)
        logger.info(f"Total messages on ledger: {total}")

        if total == 0:
            logger.info("No messages found on ledger. Nothing to sync.")
            return report

        db = self.session_factory()
        try:
            for start in range(max(start_offset, 0), total, self.batch_size):
                count = min(self.batch_size, total - start)
                logger.info(f"Fetching messages {start + 1} to {start + count}...")

                docs = [ledger_record_to_doc(record) for record in self._read_batch(start, count)]
                counts = upsert_messages(db, docs)
                record_sync_counts(counts)

                report.inserted += counts["inserted"]
                report.updated += counts["updated"]
                report.unchanged += counts["unchanged"]
                logger.info(
                    f"Batch complete: {counts['inserted']} inserted, "
                    f"{counts['updated']} updated, {counts['unchanged']} unchanged"
                )

            report.unique_senders = count_distinct_senders(db)
        except SQLAlchemyError as e:
            raise SyncError(f"Database error during sync: {e}") from e
        finally:
            db.close()

        logger.info("Sync completed", extra={"report": asdict(report)})
        return report


def main(argv: Optional[List[str]] = None) -> int:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Sync chat messages from the ledger into the database")
    parser.add_argument("--batch-size", type=int, default=settings.SYNC_BATCH_SIZE,
                        help="Ledger records per batch")
    parser.add_argument("--start-offset", type=int, default=0,
                        help="Ledger position to start from")
    parser.add_argument("--rpc-url", default=settings.RPC_URL)
    parser.add_argument("--contract-address", default=settings.CONTRACT_ADDRESS)
    args = parser.parse_args(argv)

    setup_logging(settings.LOG_LEVEL)
    logger.info(f"Contract address: {args.contract_address}, RPC URL: {args.rpc_url}")

    try:
        init_db()
        reader = ContractChainReader(args.rpc_url, args.contract_address)
        report = MessageSynchronizer(reader, batch_size=args.batch_size).run(start_offset=args.start_offset)
    except SyncError as e:
        logger.error(f"Error syncing messages: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error syncing messages: {e}")
        return 1
    finally:
        close_db()

    logger.info(
        f"Summary: {report.total} ledger messages, {report.inserted} new, "
        f"{report.updated} updated, {report.unchanged} unchanged, "
        f"{report.unique_senders} unique senders"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
