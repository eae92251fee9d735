"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses (camelCase on the wire)
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from shardtalk.utils import MAX_INT64, is_valid_address


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SaveMessageRequest(BaseModel):
    """
    Pydantic model for a message submitted after ledger confirmation.

    Validates:
    - messageId: integer >= 0 that fits a 64-bit column (strict, "5" is rejected)
    - sender: 0x followed by 40 hex characters, normalized to lowercase
    - content: non-empty after trimming, stored trimmed
    - timestamp: positive 64-bit integer (seconds since epoch)
    - transactionHash: optional
    """
    message_id: int = Field(
        ...,
        alias="messageId",
        ge=0,
        le=MAX_INT64,
        strict=True,
        description="Ledger-assigned message identifier"
    )
    sender: str = Field(
        ...,
        description="Sender account address"
    )
    content: str = Field(
        ...,
        description="Message text"
    )
    timestamp: int = Field(
        ...,
        gt=0,
        le=MAX_INT64,
        strict=True,
        description="Ledger timestamp in seconds since epoch"
    )
    transaction_hash: Optional[str] = Field(
        None,
        alias="transactionHash",
        description="Hash of the ledger transaction that produced the message"
    )

    @field_validator("sender")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate account address format and lowercase it."""
        if not is_valid_address(v):
            raise ValueError("sender must be an address of the form 0x followed by 40 hex characters")
        return v.lower()

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("content must not be empty")
        return v

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {
                    "messageId": 42,
                    "sender": "0x22d74adfb45147d7588afa3ba0ef1c363b7dfcff",
                    "content": "gm",
                    "timestamp": 1735689600,
                    "transactionHash": "0x5c50...e1",
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    error: str = Field(..., description="Error description")


class MessageResponse(BaseModel):
    """
    Response model for a single stored message.
    Maps database fields to API response format.
    """
    message_id: int = Field(..., alias="messageId")
    sender: str
    content: str
    timestamp: int
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")
    created_at: Optional[str] = Field(None, alias="createdAt")

    model_config = {
        "populate_by_name": True,
        "from_attributes": True,  # Allow creating from ORM objects
    }


class PaginationInfo(BaseModel):
    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1, le=100)
    total: int = Field(..., ge=0)
    total_pages: int = Field(..., alias="totalPages", ge=0)

    model_config = {"populate_by_name": True}


class MessageCountResponse(BaseModel):
    """
    Response model for GET /messages?count=true.

    On storage failure success is false, error is set and messageCount is 0.
    """
    address: str
    message_count: int = Field(..., alias="messageCount", ge=0)
    success: bool = True
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class MessagesResponse(BaseModel):
    """
    Response model for GET /messages with pagination.

    Contains:
    - messages: one page for the address, most recent first
    - pagination: page, limit, total for the address and totalPages
    """
    address: str
    messages: list[MessageResponse] = Field(default_factory=list)
    pagination: PaginationInfo
    success: bool = True
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class SaveMessageResponse(BaseModel):
    """Response model for POST /messages."""
    success: bool = True
    message_id: int = Field(..., alias="messageId")
    inserted: bool
    updated: bool

    model_config = {"populate_by_name": True}


class TotalMessagesResponse(BaseModel):
    """Response model for GET /totalmsg/{address}."""
    success: bool = True
    address: str
    total_messages: int = Field(..., alias="totalMessages", ge=0)
    error: Optional[str] = None

    model_config = {"populate_by_name": True}


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
