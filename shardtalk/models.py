"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import BigInteger, Column, Index, String, Text

from shardtalk.storage import Base


class Message(Base):
    """
    SQLAlchemy model for chat messages mirrored from the ledger.

    Table: messages
    Primary Key: message_id (ledger-assigned, makes every write an upsert)
    """
    __tablename__ = "messages"

    message_id = Column(BigInteger, primary_key=True, autoincrement=False)
    sender = Column(String(42), nullable=False, index=True)  # lowercase 0x address
    content = Column(Text, nullable=False)
    timestamp = Column(BigInteger, nullable=False, index=True)  # seconds since epoch
    transaction_hash = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # ISO-8601, bookkeeping only

    __table_args__ = (
        Index("ix_messages_sender_timestamp", "sender", "timestamp"),
    )
