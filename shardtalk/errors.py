"""
Error taxonomy for ShardTalk.

Every entry point classifies failures into one of these kinds before
returning:
- ValidationError: malformed input, rejected before storage access (422)
- ServiceUnavailableError: storage or ledger unreachable on a write (503)
- ConflictError: uniqueness conflict that survived the upsert retry (409)
- CircuitOpenError: call short-circuited by the client breaker, never sent
- SyncError: a reconciliation run aborted
"""

from typing import Optional


class ShardTalkError(Exception):
    """Base class for classified ShardTalk failures."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(ShardTalkError):
    status_code = 422


class ServiceUnavailableError(ShardTalkError):
    status_code = 503


class ConflictError(ShardTalkError):
    status_code = 409


class CircuitOpenError(ShardTalkError):
    """Raised when a destination's breaker is open; no request was made."""

    status_code = 503

    def __init__(self, destination: str):
        super().__init__(
            f"Service temporarily unavailable. Circuit breaker is open for {destination}"
        )
        self.destination = destination


class SyncError(ShardTalkError):
    pass
