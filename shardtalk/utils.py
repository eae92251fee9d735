"""
Utility functions for the ShardTalk API.
"""

import logging
import math
import re

from shardtalk.errors import ValidationError

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

MAX_PAGE_LIMIT = 100
# Largest value the BigInteger message_id and timestamp columns hold
MAX_INT64 = 2**63 - 1


def is_valid_address(address) -> bool:
    """Check the account address format: 0x followed by 40 hex characters."""
    return isinstance(address, str) and ADDRESS_PATTERN.match(address) is not None


def normalize_address(address) -> str:
    """
    Validate and lowercase an account address.

    Raises:
        ValidationError: if the address is missing or malformed
    """
    if not is_valid_address(address):
        logger.debug(f"Rejected malformed address: {address!r}")
        raise ValidationError("Invalid Ethereum address format")
    return address.lower()


def validate_pagination(page: int, limit: int) -> None:
    """Reject page < 1 and limit outside [1, 100]."""
    if page < 1:
        raise ValidationError("Page must be >= 1")
    if limit < 1 or limit > MAX_PAGE_LIMIT:
        raise ValidationError(f"Limit must be between 1 and {MAX_PAGE_LIMIT}")


def total_pages(total: int, limit: int) -> int:
    """Number of pages needed for total records at limit per page."""
    if total <= 0:
        return 0
    return math.ceil(total / limit)
