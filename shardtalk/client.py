"""
Messages API client.

Typed access to the ShardTalk endpoints for scripts and services. Every
request goes through a per-destination circuit breaker and a fixed timeout;
every public method returns an ApiResult and never raises.

Usage:
    with MessagesApiClient("http://localhost:8000") as client:
        result = client.get_message_count("0x22D74ADFB45147d7588aFA3ba0eF1c363b7dFcFF")
        if result.success:
            print(result.data.message_count)
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union
from urllib.parse import urlsplit, urlunsplit

import httpx
from pydantic import ValidationError as PydanticValidationError

from shardtalk.circuit_breaker import CircuitBreakerRegistry
from shardtalk.config import get_settings
from shardtalk.errors import CircuitOpenError
from shardtalk.schemas import (
    MessageCountResponse,
    MessagesResponse,
    PaginationInfo,
    SaveMessageRequest,
    SaveMessageResponse,
    TotalMessagesResponse,
)
from shardtalk.utils import MAX_PAGE_LIMIT, is_valid_address

logger = logging.getLogger(__name__)

INVALID_ADDRESS = "Invalid Ethereum address format"


@dataclass
class ApiResult:
    """
    Outcome of a client call.

    error_kind tells failures apart:
    - validation: rejected locally, no request made
    - circuit_open: short-circuited by the breaker, no request made
    - unavailable: network error, timeout, or the server answered with
      success=false safe defaults
    - http: non-2xx response
    - invalid_response: 2xx response with an unexpected shape
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    error_kind: Optional[str] = None


def destination_key(url: str) -> str:
    """Breaker key for a URL: scheme, host and path without the query string."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def request_within_deadline(
    http: httpx.Client,
    method: str,
    url: str,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    **kwargs,
) -> httpx.Response:
    """
    Send a request and read its whole body before `deadline` (a clock() value).

    httpx timeouts apply per phase and per chunk, so a server trickling bytes
    could hold the call open indefinitely. The body is streamed and the
    deadline checked after every chunk; once it passes the stream is closed.

    Raises:
        httpx.ReadTimeout: the deadline passed before the body was complete
        httpx.HTTPError: any other failure while sending, reading or decoding
    """
    def check_deadline(response: httpx.Response) -> None:
        if deadline is not None and clock() > deadline:
            raise httpx.ReadTimeout(f"Request to {url} exceeded its deadline", request=response.request)

    with http.stream(method, url, **kwargs) as response:
        check_deadline(response)
        chunks = []
        for chunk in response.iter_bytes():
            chunks.append(chunk)
            check_deadline(response)

    # Body is already decoded, so drop the headers describing the wire encoding
    headers = [
        (name, value)
        for name, value in response.headers.multi_items()
        if name.lower() not in ("content-encoding", "content-length")
    ]
    return httpx.Response(
        response.status_code,
        headers=headers,
        content=b"".join(chunks),
        request=response.request,
    )


def safe_request(
    http: httpx.Client,
    method: str,
    url: str,
    breakers: CircuitBreakerRegistry,
    timeout: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    **kwargs,
) -> httpx.Response:
    """
    Send a request guarded by the destination's circuit breaker.

    Any exception while sending or reading the response (network errors,
    timeouts, the overall `timeout` deadline, body decoding, redirects) and
    5xx responses count as failures. Any other response proves the
    destination is up and counts as success; 4xx responses are still
    returned to the caller. Every outcome is recorded, so a half-open probe
    always releases its slot.

    Raises:
        CircuitOpenError: breaker is open, nothing was sent
        httpx.HTTPError: the request failed
    """
    key = destination_key(url)
    breaker = breakers.get(key)
    if not breaker.allow_request():
        raise CircuitOpenError(key)

    deadline = clock() + timeout if timeout is not None else None
    try:
        response = request_within_deadline(http, method, url, deadline, clock, **kwargs)
    except Exception:
        breaker.record_failure()
        raise

    if response.status_code >= 500:
        breaker.record_failure()
    else:
        breaker.record_success()
    return response


class MessagesApiClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        transport: Optional[httpx.BaseTransport] = None,
        retry_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.API_BASE_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.CLIENT_TIMEOUT
        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_BREAKER_COOLDOWN,
        )
        self.retry_attempts = retry_attempts if retry_attempts is not None else settings.RETRY_ATTEMPTS
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.RETRY_BASE_DELAY
        self._sleep = sleep
        self._clock = clock
        self._http = httpx.Client(timeout=self.timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "MessagesApiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _send(self, method: str, path: str, **kwargs) -> ApiResult:
        """Perform a request; on 2xx the decoded JSON object is in data."""
        url = f"{self.base_url}{path}"
        try:
            response = safe_request(
                self._http, method, url, self.breakers,
                timeout=self.timeout, clock=self._clock, **kwargs
            )
        except CircuitOpenError as e:
            logger.warning(e.message)
            return ApiResult(success=False, error=e.message, error_kind="circuit_open")
        except httpx.TimeoutException:
            logger.error(f"Request timeout for {method} {url}")
            return ApiResult(success=False, error="Request timeout", error_kind="unavailable")
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch {url}: {e}")
            return ApiResult(success=False, error=str(e) or type(e).__name__, error_kind="unavailable")

        status_code = response.status_code
        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.is_success:
            error = body.get("error") if isinstance(body, dict) else None
            logger.error(f"API error: {status_code} for {url}")
            return ApiResult(
                success=False,
                error=error or f"HTTP {status_code} error",
                status_code=status_code,
                error_kind="http",
            )

        if not isinstance(body, dict):
            return self._invalid(status_code)
        return ApiResult(success=True, data=body, status_code=status_code)

    @staticmethod
    def _invalid(status_code: Optional[int], error: str = "Invalid response structure") -> ApiResult:
        return ApiResult(success=False, error=error, status_code=status_code, error_kind="invalid_response")

    @staticmethod
    def _validation(error: str) -> ApiResult:
        return ApiResult(success=False, error=error, error_kind="validation")

    @staticmethod
    def _degraded(data: Any, status_code: Optional[int]) -> ApiResult:
        """Server answered with success=false safe defaults."""
        return ApiResult(
            success=False,
            data=data,
            error=data.error or "Service degraded",
            status_code=status_code,
            error_kind="unavailable",
        )

    def get_message_count(self, address: str) -> ApiResult:
        """Message count for an address; data is a MessageCountResponse."""
        if not is_valid_address(address):
            return self._validation(INVALID_ADDRESS)

        result = self._send("GET", "/messages", params={"address": address, "count": "true"})
        if not result.success:
            return result

        try:
            data = MessageCountResponse.model_validate(result.data)
        except PydanticValidationError:
            return self._invalid(result.status_code)
        if data.address.lower() != address.lower():
            return self._invalid(result.status_code, "Response address mismatch")
        if not data.success:
            return self._degraded(data, result.status_code)
        return ApiResult(success=True, data=data, status_code=result.status_code)

    def get_messages(self, address: str, page: int = 1, limit: int = 20) -> ApiResult:
        """One page of messages, most recent first; data is a MessagesResponse."""
        if not is_valid_address(address):
            return self._validation(INVALID_ADDRESS)
        if page < 1:
            return self._validation("Page must be >= 1")
        if limit < 1 or limit > MAX_PAGE_LIMIT:
            return self._validation(f"Limit must be between 1 and {MAX_PAGE_LIMIT}")

        result = self._send(
            "GET", "/messages", params={"address": address, "page": page, "limit": limit}
        )
        if not result.success:
            return result

        try:
            data = MessagesResponse.model_validate(result.data)
        except PydanticValidationError:
            return self._invalid(result.status_code)
        if data.address.lower() != address.lower():
            return self._invalid(result.status_code, "Response address mismatch")
        if not data.success:
            return self._degraded(data, result.status_code)
        return ApiResult(success=True, data=data, status_code=result.status_code)

    def get_all_messages(self, address: str, limit: int = 50) -> ApiResult:
        """Walk every page and return all messages in one MessagesResponse."""
        messages = []
        page = 1
        while True:
            result = self.get_messages(address, page, limit)
            if not result.success:
                return result
            messages.extend(result.data.messages)
            if page >= result.data.pagination.total_pages:
                break
            page += 1

        data = MessagesResponse(
            address=result.data.address,
            messages=messages,
            pagination=PaginationInfo(
                page=1,
                limit=limit,
                total=len(messages),
                total_pages=1 if messages else 0,
            ),
        )
        return ApiResult(success=True, data=data, status_code=result.status_code)

    def get_total_messages(self, address: str) -> ApiResult:
        """GET /totalmsg/{address}; data is a TotalMessagesResponse."""
        if not is_valid_address(address):
            return self._validation(INVALID_ADDRESS)

        result = self._send("GET", f"/totalmsg/{address}")
        if not result.success:
            return result

        try:
            data = TotalMessagesResponse.model_validate(result.data)
        except PydanticValidationError:
            return self._invalid(result.status_code)
        if not data.success:
            return self._degraded(data, result.status_code)
        return ApiResult(success=True, data=data, status_code=result.status_code)

    def save_message(self, message: Union[SaveMessageRequest, dict]) -> ApiResult:
        """Persist a ledger-confirmed message; data is a SaveMessageResponse."""
        if not isinstance(message, SaveMessageRequest):
            try:
                message = SaveMessageRequest.model_validate(message)
            except PydanticValidationError as e:
                return self._validation(str(e))

        result = self._send("POST", "/messages", json=message.model_dump(by_alias=True))
        if not result.success:
            return result

        try:
            data = SaveMessageResponse.model_validate(result.data)
        except PydanticValidationError:
            return self._invalid(result.status_code)
        if not data.success:
            return self._invalid(result.status_code, "Save not acknowledged")
        return ApiResult(success=True, data=data, status_code=result.status_code)

    def save_message_with_retry(self, message: Union[SaveMessageRequest, dict]) -> ApiResult:
        """
        Save with bounded exponential backoff on top of the circuit breaker.

        Attempts up to retry_attempts times, sleeping retry_base_delay * 2**(n-1)
        between attempts (1s, 2s, 4s, ... by default). Stops at the first
        response that is both HTTP success and success=true. A message that
        fails local validation is not retried since no request was made.
        """
        result = ApiResult(success=False, error="No attempt made")
        for attempt in range(1, self.retry_attempts + 1):
            result = self.save_message(message)
            if result.success:
                return result
            if result.error_kind == "validation":
                return result

            logger.warning(
                f"Save attempt {attempt}/{self.retry_attempts} failed: {result.error}"
            )
            if attempt < self.retry_attempts:
                self._sleep(self.retry_base_delay * 2 ** (attempt - 1))

        logger.error(f"Giving up on saving message after {self.retry_attempts} attempts: {result.error}")
        return ApiResult(
            success=False,
            error=f"Failed after {self.retry_attempts} attempts: {result.error}",
            status_code=result.status_code,
            error_kind=result.error_kind,
        )

    def has_messages(self, address: str) -> bool:
        result = self.get_message_count(address)
        return result.success and result.data.message_count > 0

    def get_latest_message(self, address: str) -> ApiResult:
        """Most recent message of an address; data is a MessageResponse or None."""
        result = self.get_messages(address, 1, 1)
        if not result.success:
            return ApiResult(
                success=False,
                error=result.error,
                status_code=result.status_code,
                error_kind=result.error_kind,
            )
        latest = result.data.messages[0] if result.data.messages else None
        return ApiResult(success=True, data=latest, status_code=result.status_code)


def verify_message_count(address: str, base_url: Optional[str] = None) -> ApiResult:
    with MessagesApiClient(base_url) as client:
        return client.get_message_count(address)


def verify_messages(address: str, page: int = 1, limit: int = 20, base_url: Optional[str] = None) -> ApiResult:
    with MessagesApiClient(base_url) as client:
        return client.get_messages(address, page, limit)
