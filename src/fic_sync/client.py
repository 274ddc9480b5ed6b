"""
Fatture in Cloud API Client

Synchronous HTTP client with:
- Per-caller rate limiting checked before every attempt
- A shared circuit breaker wrapping every attempt
- Retry for transient errors (429 exponential, 5xx/network linear)
- Optional deadline bounding the whole retry sequence
- Recursive payload sanitization
- Structured request/response logging
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Iterator

import httpx
import structlog
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt
from tenacity.stop import stop_base

from fic_sync.circuit_breaker import CircuitBreaker
from fic_sync.errors import (
    AuthenticationError,
    DeadlineExceeded,
    ErrorKind,
    FicSyncError,
    NotFoundError,
    RetryExhausted,
    UnclassifiedApiError,
)
from fic_sync.models import FicClientEntity, FicDocument, FicProduct, FicProductsPage
from fic_sync.rate_limiter import RateLimiter
from fic_sync.vault import Credentials, sanitize_input

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://api-v2.fattureincloud.it"
USER_AGENT = "FIC-Sync/1.0"


# ---------------------------------------------------------------------------
# Transient errors (retried, never surfaced directly)
# ---------------------------------------------------------------------------

class TransientApiError(FicSyncError):
    """Failure worth retrying. Surfaces as RetryExhausted once retries run out."""


class FicRateLimitError(TransientApiError):
    """Remote API answered 429."""


class FicServerError(TransientApiError):
    """Remote API answered 5xx."""


class FicTransportError(TransientApiError):
    """Connection failed or timed out before a response arrived."""


def is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger a retry."""
    return isinstance(exception, TransientApiError)


def backoff_seconds(exception: BaseException | None, retry_count: int) -> float:
    """
    Delay before retry number `retry_count + 1`.

    429 backs off exponentially (1, 2, 4 s); server and network errors back
    off linearly (2, 4, 6 s).
    """
    if isinstance(exception, FicRateLimitError):
        return float(2 ** retry_count)
    return 2.0 * (retry_count + 1)


# ---------------------------------------------------------------------------
# Deadline / results
# ---------------------------------------------------------------------------

class Deadline:
    """
    Point in time after which a request sequence must give up.

    Example:
        client.request("/products", deadline=Deadline(30))
    """

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self._clock() >= self.expires_at


class stop_at_deadline(stop_base):
    """Stop retrying once the deadline has passed."""

    def __init__(self, deadline: Deadline | None):
        self.deadline = deadline

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.deadline is not None and self.deadline.expired


@dataclass
class ApiResult:
    """Outcome of FicClient.call: either data or a classified error."""
    ok: bool
    data: dict[str, Any] | None = None
    error: FicSyncError | None = None

    @property
    def kind(self) -> ErrorKind | None:
        return self.error.kind if self.error else None


def sanitize_payload(payload: Any) -> Any:
    """Sanitize every string value in a nested dict/list payload."""
    if isinstance(payload, dict):
        return {key: sanitize_payload(value) for key, value in payload.items()}
    if isinstance(payload, list):
        return [sanitize_payload(value) for value in payload]
    return sanitize_input(payload)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class FicClient:
    """
    Fatture in Cloud API client.

    Every attempt (including retries) is counted by the rate limiter and runs
    through the circuit breaker, so a breaker trip in the middle of a retry
    sequence aborts the remaining retries with CircuitOpen.

    Example:
        client = FicClient(credentials, rate_limiter, breaker, caller_id="ops")

        with client:
            page = client.get_products(page=1)
    """

    def __init__(
        self,
        credentials: Credentials,
        rate_limiter: RateLimiter,
        breaker: CircuitBreaker,
        caller_id: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            credentials: Decrypted API key and company id
            rate_limiter: Shared per-caller limiter
            breaker: Shared circuit breaker
            caller_id: Identity whose budget the limiter charges
            base_url: API root (company path is appended)
            timeout: Request timeout in seconds
            max_retries: Retries after the first attempt for transient errors
            sleep: Backoff sleep function (injectable for tests)
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.credentials = credentials
        self.company_id = credentials.company_id
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.caller_id = caller_id
        self.base_url = f"{base_url.rstrip('/')}/c/{self.company_id}"
        self.timeout = timeout
        self.max_retries = max_retries

        self._sleep = sleep
        self._transport = transport
        self._client: httpx.Client | None = None

        # Request counters for observability
        self._request_count = 0
        self._error_count = 0
        self._retry_count = 0

        self._log = logger.bind(company_id=self.company_id, caller_id=caller_id)

    def _build_http_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.credentials.api_key.get_secret_value()}",
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            },
        )

    def __enter__(self) -> "FicClient":
        self._client = self._build_http_client()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = self._build_http_client()
        return self._client

    # -------------------------------------------------------------------------
    # Core request path
    # -------------------------------------------------------------------------

    def _send(
        self,
        method: str,
        endpoint: str,
        payload: Any,
        params: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """One HTTP round trip, classified. Runs inside the circuit breaker."""
        url = f"{self.base_url}{endpoint}"

        self._request_count += 1
        request_id = self._request_count

        start_time = time.monotonic()
        try:
            response = self.client.request(method, url, params=params, json=payload)
        except httpx.TransportError as e:
            self._error_count += 1
            raise FicTransportError(f"Network error: {e}") from e
        elapsed = time.monotonic() - start_time

        code = response.status_code
        self._log.debug(
            "API response",
            request_id=request_id,
            endpoint=endpoint,
            status_code=code,
            elapsed_ms=round(elapsed * 1000),
        )

        if 200 <= code < 300:
            if not response.content:
                return {}
            try:
                body = response.json()
            except ValueError as e:
                raise UnclassifiedApiError(
                    f"Invalid JSON response: {e}",
                    status_code=code,
                    response_body=response.text[:500],
                ) from e
            if not isinstance(body, dict):
                raise UnclassifiedApiError(
                    f"Unexpected response shape: {type(body).__name__}",
                    status_code=code,
                    response_body=response.text[:500],
                )
            return body

        self._error_count += 1

        if code == 401:
            raise AuthenticationError("API key invalid or expired", status_code=401)

        if code == 404:
            raise NotFoundError(f"Resource not found: {endpoint}", status_code=404)

        if code == 429:
            raise FicRateLimitError(
                "Remote rate limit hit",
                status_code=429,
                response_body=response.text[:500],
            )

        if code >= 500:
            raise FicServerError(
                f"Server error {code}",
                status_code=code,
                response_body=response.text[:500],
            )

        raise UnclassifiedApiError(
            f"API error {code}: {response.text[:200]}",
            status_code=code,
            response_body=response.text,
        )

    def _attempt(
        self,
        method: str,
        endpoint: str,
        payload: Any,
        params: dict[str, Any] | None,
        deadline: Deadline | None,
    ) -> dict[str, Any]:
        if deadline is not None and deadline.expired:
            raise DeadlineExceeded(f"Deadline expired before {method} {endpoint}")

        self.rate_limiter.check_limit(self.caller_id)
        return self.breaker.call(self._send, method, endpoint, payload, params)

    def _wait(self, deadline: Deadline | None) -> Callable[[RetryCallState], float]:
        def wait(retry_state: RetryCallState) -> float:
            exception = retry_state.outcome.exception() if retry_state.outcome else None
            delay = backoff_seconds(exception, retry_state.attempt_number - 1)
            if deadline is not None:
                delay = min(delay, deadline.remaining())
            return delay
        return wait

    def request(
        self,
        endpoint: str,
        method: str = "GET",
        payload: Any = None,
        params: dict[str, Any] | None = None,
        deadline: Deadline | None = None,
    ) -> dict[str, Any]:
        """
        Make a rate-limited, breaker-guarded, retrying request.

        Raises:
            RateLimitExceeded: Local budget spent (no network call made)
            CircuitOpen: Breaker rejected the attempt
            AuthenticationError / NotFoundError / UnclassifiedApiError: Terminal
            RetryExhausted: 429 or 5xx persisted past the retry budget
            DeadlineExceeded: Deadline passed before a terminal outcome
        """
        log = self._log.bind(endpoint=endpoint, method=method)
        body = sanitize_payload(payload) if payload is not None else None

        def before_sleep(retry_state: RetryCallState) -> None:
            self._retry_count += 1
            exception = retry_state.outcome.exception() if retry_state.outcome else None
            log.info(
                "Transient API error, retrying",
                attempt=retry_state.attempt_number,
                delay_ms=round((retry_state.next_action.sleep if retry_state.next_action else 0) * 1000),
                error=str(exception),
            )

        retrying = Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries + 1) | stop_at_deadline(deadline),
            wait=self._wait(deadline),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

        try:
            return retrying(self._attempt, method, endpoint, body, params, deadline)
        except TransientApiError as e:
            if deadline is not None and deadline.expired:
                error: FicSyncError = DeadlineExceeded(
                    f"Deadline expired while retrying {method} {endpoint}",
                    status_code=e.status_code,
                )
            else:
                error = RetryExhausted(
                    "Too many attempts, try again later",
                    status_code=e.status_code,
                    response_body=e.response_body,
                )
            log.error("API request failed", error=str(error), kind=error.kind.value)
            raise error from e
        except FicSyncError as e:
            log.error("API request failed", error=str(e), kind=e.kind.value)
            raise

    def call(
        self,
        endpoint: str,
        method: str = "GET",
        payload: Any = None,
        params: dict[str, Any] | None = None,
        deadline: Deadline | None = None,
    ) -> ApiResult:
        """Like request(), but returns an ApiResult instead of raising."""
        try:
            data = self.request(endpoint, method, payload, params, deadline)
        except FicSyncError as e:
            return ApiResult(ok=False, error=e)
        return ApiResult(ok=True, data=data)

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    def get_products(self, page: int = 1, per_page: int = 50) -> FicProductsPage:
        """Get one page of the remote catalog."""
        data = self.request("/products", params={"page": page, "per_page": per_page})
        return FicProductsPage.model_validate(data)

    def iter_product_pages(self, per_page: int = 50, max_pages: int = 20) -> Iterator[FicProductsPage]:
        """Iterate catalog pages, stopping at the last page or `max_pages`."""
        page = 1

        while page <= max_pages:
            response = self.get_products(page=page, per_page=per_page)
            yield response

            self._log.info(
                "Fetched products page",
                page=page,
                last_page=response.last_page,
                count=len(response.data),
            )

            if not response.has_more:
                break
            page += 1

    def upsert_product(self, product: dict[str, Any]) -> FicProduct:
        """Update by id when present, otherwise create."""
        product_id = product.get("id")
        if product_id:
            data = self.request(f"/products/{product_id}", "PUT", {"data": product})
        else:
            data = self.request("/products", "POST", {"data": product})
        return FicProduct.model_validate(data.get("data", data))

    def find_product_by_code(self, code: str) -> FicProduct | None:
        data = self.request("/products", params={"q": code})
        for item in data.get("data") or []:
            if item.get("code") == code:
                return FicProduct.model_validate(item)
        return None

    # -------------------------------------------------------------------------
    # Clients and documents
    # -------------------------------------------------------------------------

    def find_client_by_email(self, email: str) -> FicClientEntity | None:
        """Search clients and return the one whose email matches exactly."""
        data = self.request("/entities/clients", params={"q": email})
        for item in data.get("data") or []:
            if item.get("email") == email:
                return FicClientEntity.model_validate(item)
        return None

    def create_client(self, client: dict[str, Any]) -> FicClientEntity:
        data = self.request("/entities/clients", "POST", {"data": client})
        return FicClientEntity.model_validate(data["data"])

    def create_document(self, document: dict[str, Any]) -> FicDocument:
        data = self.request("/issued_documents", "POST", {"data": document})
        return FicDocument.model_validate(data["data"])

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def test_connection(self) -> dict[str, Any]:
        """Verify credentials with a one-item catalog read."""
        try:
            data = self.request("/products", params={"per_page": 1})
            return {"success": True, "message": "Connection OK", "data": data}
        except FicSyncError as e:
            return {"success": False, "message": str(e), "kind": e.kind.value}

    def health_check(self) -> dict[str, Any]:
        """Verify API connectivity and credentials."""
        result = self.call("/products", params={"per_page": 1})
        breaker = self.breaker.status.value

        if result.ok:
            return {"status": "healthy", "company_id": self.company_id, "breaker": breaker}
        if result.kind == ErrorKind.AUTHENTICATION:
            return {"status": "auth_error", "message": "Invalid API key", "breaker": breaker}
        return {
            "status": "error",
            "kind": result.kind.value if result.kind else None,
            "message": str(result.error),
            "breaker": breaker,
        }

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            "company_id": self.company_id,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "retry_count": self._retry_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
            "rate_limiter": self.rate_limiter.get_stats(),
            "circuit_breaker": self.breaker.get_stats(),
        }
