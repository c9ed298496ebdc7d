"""Resilient HTTP client for the synclink API.

This module provides:
- ResilientApiClient: Retry, circuit breaking, caching and offline queuing
- ApiRequest: Description of one API call
- ProjectInfo / FileStats: Typed views of server responses
- APIError and subclasses: Error taxonomy surfaced to callers

Every call goes through ResilientApiClient.execute(), which returns a
concurrent.futures.Future:
- Cached reads resolve immediately from the response cache
- When online with a closed circuit, the request runs in the calling
  thread with retries and the future is already resolved on return
- When offline, when the circuit is open, or when the retries of a
  network failure or rate limit run out, the request joins an in-memory
  priority queue and the future stays pending until a background probe
  drains it
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Generic, TypeVar

import httpx

from synclink.client.sync.retry import CircuitBreaker, CircuitState, compute_backoff, parse_retry_after
from synclink.core.config import ClientConfig, RetryConfig, ServerConfig

if TYPE_CHECKING:
    from synclink.client.auth import AuthService

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEALTHCHECK_PATH = "/healthcheck"


class APIError(Exception):
    """Base exception for API errors."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NetworkError(APIError):
    """No response was received."""


class ClientError(APIError):
    """Request rejected with a 4xx status; retrying will not help."""


class NotFoundError(ClientError):
    """Resource not found."""


class AuthenticationError(APIError):
    """Authentication failed or the token could not be refreshed."""


class RateLimitError(APIError):
    """Server asked us to slow down (429)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ServerError(APIError):
    """Server failed with a 5xx status."""


class CircuitOpenError(APIError):
    """Call short-circuited because the circuit breaker is open."""


class RetryBudgetExceededError(APIError):
    """Queued request waited longer than the retry budget."""


# Conditions that are absorbed into the offline queue
TRANSIENT_ERRORS: tuple[type[APIError], ...] = (NetworkError, RateLimitError, CircuitOpenError)


def _default_parse(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("message") or data.get("error")
        if detail:
            return str(detail)
    return response.reason_phrase or f"HTTP {response.status_code}"


@dataclass
class ApiRequest(Generic[T]):
    """One API call.

    Attributes:
        method: HTTP method.
        path: Path relative to the API endpoint.
        params: Query parameters.
        json: JSON body.
        parse: Turns the response into the call's result.
        authenticated: Attach the bearer token.
    """

    method: str
    path: str
    params: dict[str, Any] | None = None
    json: Any = None
    parse: Callable[[httpx.Response], T] = _default_parse
    authenticated: bool = True

    def __post_init__(self) -> None:
        self.method = self.method.upper()

    @property
    def is_read_only(self) -> bool:
        return self.method in ("GET", "HEAD")

    @property
    def cache_key(self) -> tuple[str, str, tuple[tuple[str, str], ...]]:
        """(method, normalized path, sorted params)."""
        path = self.path.rstrip("/") or "/"
        params = tuple(sorted((str(k), str(v)) for k, v in (self.params or {}).items()))
        return (self.method, path, params)


@dataclass
class CacheEntry:
    value: Any
    stored_at: float


class ResponseCache:
    """Read-response cache with expiry checked on lookup."""

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[Any, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, key: Any) -> tuple[bool, Any]:
        """Look up a key. Returns (hit, value)."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            if self._clock() - entry.stored_at >= self._ttl:
                del self._entries[key]
                return False, None
            return True, entry.value

    def put(self, key: Any, value: Any) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(value=value, stored_at=self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class _PendingRequest:
    request: ApiRequest[Any]
    priority: int
    future: Future[Any]
    enqueued_at: float
    seq: int


@dataclass
class ProjectInfo:
    """Project metadata from server."""

    id: str
    name: str
    status: str
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectInfo:
        """Create from API response dictionary."""
        return cls(
            id=str(data["id"]),
            name=data["name"],
            status=data.get("status", "unknown"),
            description=data.get("description"),
            created_at=(
                datetime.fromisoformat(data["createdAt"]) if data.get("createdAt") else None
            ),
            updated_at=(
                datetime.fromisoformat(data["updatedAt"]) if data.get("updatedAt") else None
            ),
        )


@dataclass
class FileStats:
    """File listing entry from server."""

    path: str
    size: int
    last_modified: str
    content_type: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileStats:
        """Create from API response dictionary."""
        return cls(
            path=data["path"],
            size=int(data.get("size", 0)),
            last_modified=data.get("lastModified", ""),
            content_type=data.get("contentType", ""),
        )


def _log_request(request: httpx.Request) -> None:
    logger.debug("API request: %s %s", request.method, request.url)


def _log_response(response: httpx.Response) -> None:
    logger.debug(
        "API response: %s %s for %s %s",
        response.status_code,
        response.reason_phrase,
        response.request.method,
        response.request.url,
    )


class ResilientApiClient:
    """HTTP client that keeps working through an unreliable network.

    Usage:
        with ResilientApiClient(config.server, auth, config.retry, config.client) as api:
            project = api.get_project("p1").result()
            api.upsert_file("p1", "src/a.txt", "hello", priority=5)
    """

    def __init__(
        self,
        config: ServerConfig,
        auth: AuthService | None = None,
        retry_config: RetryConfig | None = None,
        client_config: ClientConfig | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the client.

        Args:
            config: Server endpoint settings.
            auth: Token provider; requests are sent without a token if None.
            retry_config: Attempts, backoff, circuit and probe settings.
            client_config: Cache settings.
            transport: Optional httpx transport, mainly for tests.
            sleep: Sleep function used between retries.
            clock: Monotonic clock for cache, circuit and retry budget.
        """
        self._config = config
        self._auth = auth
        self._retry = retry_config or RetryConfig()
        client_config = client_config or ClientConfig()
        self._sleep = sleep
        self._clock = clock

        self._client = httpx.Client(
            base_url=config.api_endpoint,
            timeout=config.timeout,
            verify=config.verify_ssl,
            headers={
                "Accept": "application/json",
                "User-Agent": config.user_agent,
            },
            event_hooks={"request": [_log_request], "response": [_log_response]},
            transport=transport,
        )
        self._cache = ResponseCache(client_config.cache_ttl, clock)
        self._circuit = CircuitBreaker(
            threshold=self._retry.circuit_threshold,
            cooldown=self._retry.circuit_cooldown,
            clock=clock,
        )

        self._lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._pending: list[tuple[int, int, _PendingRequest]] = []
        self._seq = itertools.count()
        self._online = True
        self._closed = threading.Event()
        self._probe_thread: threading.Thread | None = None

    # === Introspection ===

    @property
    def online(self) -> bool:
        """Whether the client believes the server is reachable."""
        with self._lock:
            return self._online

    @property
    def circuit_state(self) -> CircuitState:
        return self._circuit.state

    @property
    def pending_count(self) -> int:
        """Number of requests waiting in the offline queue."""
        with self._lock:
            return len(self._pending)

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    # === Lifecycle ===

    def close(self) -> None:
        """Stop the probe, cancel queued requests and close the HTTP client."""
        self._closed.set()
        with self._lock:
            thread = self._probe_thread
            pending = [entry for _, _, entry in self._pending]
            self._pending = []
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5.0)
        for entry in pending:
            entry.future.cancel()
        if pending:
            logger.warning("Discarded %d queued API requests on close", len(pending))
        self._client.close()

    def __enter__(self) -> ResilientApiClient:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()

    # === Core ===

    def execute(
        self,
        request: ApiRequest[T],
        priority: int = 1,
        *,
        offline_fallback: bool = True,
    ) -> Future[T]:
        """Run a request with caching, retries and offline fallback.

        Args:
            request: The call to make.
            priority: Position in the offline queue; higher drains first.
            offline_fallback: Queue on transient failure. When False the
                future fails with NetworkError, RateLimitError or
                CircuitOpenError instead.

        Returns:
            A future for the parsed result. Permanent failures (ClientError,
            AuthenticationError, ServerError after all attempts) are set on it.
        """
        future: Future[T] = Future()

        if request.is_read_only:
            hit, value = self._cache.get(request.cache_key)
            if hit:
                logger.debug("Cache hit for %s %s", request.method, request.path)
                future.set_result(value)
                return future

        if not self.online:
            return self._defer(request, priority, future, offline_fallback, NetworkError("Client is offline"))
        if self._circuit.is_open():
            return self._defer(request, priority, future, offline_fallback, CircuitOpenError("Circuit breaker is open"))

        try:
            result = self._send_with_retry(request)
        except TRANSIENT_ERRORS as e:
            if isinstance(e, NetworkError):
                self._set_online(False)
            return self._defer(request, priority, future, offline_fallback, e)
        except APIError as e:
            future.set_exception(e)
            return future

        if request.is_read_only:
            self._cache.put(request.cache_key, result)
        future.set_result(result)
        return future

    def _defer(
        self,
        request: ApiRequest[T],
        priority: int,
        future: Future[T],
        offline_fallback: bool,
        error: APIError,
    ) -> Future[T]:
        if not offline_fallback:
            future.set_exception(error)
            return future
        logger.info("Queueing %s %s for later delivery: %s", request.method, request.path, error)
        entry = _PendingRequest(
            request=request,
            priority=priority,
            future=future,
            enqueued_at=self._clock(),
            seq=next(self._seq),
        )
        self._push(entry)
        return future

    def _push(self, entry: _PendingRequest) -> None:
        with self._lock:
            heapq.heappush(self._pending, (-entry.priority, entry.seq, entry))
        self._ensure_probe()

    def _headers(self, request: ApiRequest[Any]) -> dict[str, str]:
        if request.authenticated and self._auth is not None:
            return self._auth.auth_headers()
        return {}

    def _send_with_retry(self, request: ApiRequest[T]) -> T:
        """Send a request, retrying transient failures in the calling thread.

        Raises:
            NetworkError: No response after all attempts.
            RateLimitError: Still rate limited after all attempts.
            ServerError: Still failing with 5xx after all attempts.
            ClientError: 4xx other than 401/429, without retry.
            AuthenticationError: Token refresh failed or 401 after refresh.
            CircuitOpenError: The circuit opened between attempts.
        """
        attempt = 0
        refreshed = False

        while True:
            if self._circuit.is_open():
                raise CircuitOpenError("Circuit breaker is open")

            error: APIError
            try:
                response = self._client.request(
                    request.method,
                    request.path,
                    params=request.params,
                    json=request.json,
                    headers=self._headers(request),
                )
            except httpx.RequestError as e:
                self._circuit.record_failure()
                error = NetworkError(f"No response for {request.method} {request.path}: {e}")
            else:
                status = response.status_code
                if status < 400:
                    self._circuit.record_success()
                    try:
                        return request.parse(response)
                    except (ValueError, KeyError, TypeError) as e:
                        raise APIError(
                            f"Invalid response for {request.method} {request.path}: {e}", status
                        ) from e

                if status == 401 and request.authenticated and self._auth is not None:
                    if refreshed:
                        raise AuthenticationError("Invalid or expired token", 401)
                    refreshed = True
                    logger.debug("Got 401 for %s, refreshing access token", request.path)
                    self._auth.refresh_access_token()
                    continue
                if status == 401:
                    raise AuthenticationError("Invalid or expired token", 401)
                if status == 429:
                    self._circuit.record_failure()
                    error = RateLimitError(
                        _error_detail(response),
                        status,
                        retry_after=parse_retry_after(response.headers.get("Retry-After")),
                    )
                elif status >= 500:
                    self._circuit.record_failure()
                    error = ServerError(_error_detail(response), status)
                elif status == 404:
                    raise NotFoundError(_error_detail(response), status)
                else:
                    raise ClientError(_error_detail(response), status)

            attempt += 1
            if attempt >= self._retry.max_attempts:
                logger.error(
                    "%s %s failed after %d attempts: %s",
                    request.method,
                    request.path,
                    attempt,
                    error,
                )
                raise error

            if isinstance(error, RateLimitError) and error.retry_after is not None:
                delay = error.retry_after
            else:
                delay = compute_backoff(attempt - 1, self._retry.base_delay, self._retry.jitter)
            logger.warning(
                "Attempt %d/%d for %s %s failed: %s. Retrying in %.1fs...",
                attempt,
                self._retry.max_attempts,
                request.method,
                request.path,
                error,
                delay,
            )
            self._sleep(delay)

    # === Offline queue ===

    def _set_online(self, online: bool) -> None:
        with self._lock:
            changed = self._online != online
            self._online = online
        if changed and online:
            logger.info("Connection to %s restored", self._config.api_endpoint)
        elif changed:
            logger.warning("Lost connection to %s, queueing requests", self._config.api_endpoint)
            self._ensure_probe()

    def _ensure_probe(self) -> None:
        with self._lock:
            if self._closed.is_set() or self._probe_thread is not None:
                return
            self._probe_thread = threading.Thread(
                target=self._probe_loop,
                name="synclink-api-probe",
                daemon=True,
            )
            self._probe_thread.start()

    def _probe_loop(self) -> None:
        """Poll the health endpoint while offline and drain when possible."""
        interval = self._retry.health_check_interval
        while not self._closed.wait(interval):
            if not self.online and not self.check_connectivity():
                logger.debug("Health check failed, still offline")
                continue

            self.drain_pending()

            with self._lock:
                if self._online and not self._pending:
                    self._probe_thread = None
                    return
        with self._lock:
            self._probe_thread = None

    def drain_pending(self) -> int:
        """Send queued requests in priority order.

        Stops early when the client goes offline or the circuit opens.
        Requests that waited longer than the retry budget fail with
        RetryBudgetExceededError.

        Returns:
            Number of queued requests resolved (successfully or not).
        """
        if not self._drain_lock.acquire(blocking=False):
            return 0
        resolved = 0
        try:
            while self.online and not self._circuit.is_open():
                with self._lock:
                    if not self._pending:
                        break
                    _, _, entry = heapq.heappop(self._pending)

                if entry.future.cancelled():
                    continue

                waited = self._clock() - entry.enqueued_at
                if waited > self._retry.retry_budget:
                    entry.future.set_exception(
                        RetryBudgetExceededError(
                            f"{entry.request.method} {entry.request.path} "
                            f"gave up after waiting {waited:.0f}s"
                        )
                    )
                    resolved += 1
                    continue

                try:
                    result = self._send_with_retry(entry.request)
                except TRANSIENT_ERRORS as e:
                    if isinstance(e, NetworkError):
                        self._set_online(False)
                    with self._lock:
                        heapq.heappush(self._pending, (-entry.priority, entry.seq, entry))
                    break
                except APIError as e:
                    entry.future.set_exception(e)
                    resolved += 1
                    continue

                if entry.request.is_read_only:
                    self._cache.put(entry.request.cache_key, result)
                entry.future.set_result(result)
                resolved += 1
        finally:
            self._drain_lock.release()

        if resolved:
            logger.info("Delivered %d queued API requests", resolved)
        return resolved

    # === Health check ===

    def health_check(self) -> bool:
        """Check if the server is reachable.

        Sent directly, without retries or queueing, since it is the probe
        that decides when queued requests may go out.
        """
        try:
            response = self._client.get(HEALTHCHECK_PATH)
        except httpx.RequestError:
            return False
        return response.status_code == 200

    def check_connectivity(self) -> bool:
        """Probe the server and mark the client online if it answers."""
        if self.health_check():
            self._set_online(True)
            return True
        return False

    # === Auth ===

    def verify_credentials(self) -> bool:
        """Check that the current credentials are accepted."""
        request: ApiRequest[bool] = ApiRequest("GET", "/auth/verify", parse=lambda r: True)
        try:
            return self.execute(request, offline_fallback=False).result()
        except APIError as e:
            logger.debug("Credential verification failed: %s", e)
            return False

    # === Projects ===

    def list_projects(self, *, offline_fallback: bool = True) -> Future[list[ProjectInfo]]:
        request: ApiRequest[list[ProjectInfo]] = ApiRequest(
            "GET",
            "/projects",
            parse=lambda r: [ProjectInfo.from_dict(p) for p in r.json().get("projects", [])],
        )
        return self.execute(request, offline_fallback=offline_fallback)

    def get_project(self, project_id: str, *, offline_fallback: bool = True) -> Future[ProjectInfo]:
        request: ApiRequest[ProjectInfo] = ApiRequest(
            "GET",
            f"/projects/{project_id}",
            parse=lambda r: ProjectInfo.from_dict(r.json()),
        )
        return self.execute(request, offline_fallback=offline_fallback)

    def create_project(
        self,
        name: str,
        description: str | None = None,
        *,
        priority: int = 1,
    ) -> Future[ProjectInfo]:
        body: dict[str, Any] = {"name": name}
        if description is not None:
            body["description"] = description
        request: ApiRequest[ProjectInfo] = ApiRequest(
            "POST", "/projects", json=body, parse=lambda r: ProjectInfo.from_dict(r.json())
        )
        return self.execute(request, priority)

    def update_project(
        self,
        project_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        priority: int = 1,
    ) -> Future[ProjectInfo]:
        body = {k: v for k, v in (("name", name), ("description", description)) if v is not None}
        request: ApiRequest[ProjectInfo] = ApiRequest(
            "PUT",
            f"/projects/{project_id}",
            json=body,
            parse=lambda r: ProjectInfo.from_dict(r.json()),
        )
        return self.execute(request, priority)

    def delete_project(self, project_id: str, *, priority: int = 1) -> Future[bool]:
        request: ApiRequest[bool] = ApiRequest(
            "DELETE", f"/projects/{project_id}", parse=lambda r: r.status_code == 200
        )
        return self.execute(request, priority)

    def get_project_status(
        self, project_id: str, *, offline_fallback: bool = True
    ) -> Future[dict[str, Any]]:
        return self.execute(
            ApiRequest("GET", f"/projects/{project_id}/status"),
            offline_fallback=offline_fallback,
        )

    def get_project_stats(
        self, project_id: str, *, offline_fallback: bool = True
    ) -> Future[dict[str, Any]]:
        return self.execute(
            ApiRequest("GET", f"/projects/{project_id}/stats"),
            offline_fallback=offline_fallback,
        )

    def sync_project(
        self, project_id: str, *, priority: int = 1, offline_fallback: bool = True
    ) -> Future[dict[str, Any]]:
        """Ask the server to reconcile the project."""
        return self.execute(
            ApiRequest("POST", f"/projects/{project_id}/sync"),
            priority,
            offline_fallback=offline_fallback,
        )

    # === Files ===

    def upsert_file(
        self,
        project_id: str,
        path: str,
        content: str,
        *,
        priority: int = 1,
        offline_fallback: bool = True,
    ) -> Future[dict[str, Any]]:
        """Create or replace one file."""
        request: ApiRequest[dict[str, Any]] = ApiRequest(
            "POST",
            f"/projects/{project_id}/files",
            json={"path": path, "content": content},
        )
        return self.execute(request, priority, offline_fallback=offline_fallback)

    def upsert_files(
        self,
        project_id: str,
        files: list[dict[str, str]],
        *,
        priority: int = 1,
    ) -> Future[dict[str, Any]]:
        """Create or replace several files in one request.

        Args:
            project_id: Project ID.
            files: Items of the form {"path": ..., "content": ...}.
            priority: Offline queue priority.
        """
        request: ApiRequest[dict[str, Any]] = ApiRequest(
            "POST", f"/projects/{project_id}/files/batch", json={"files": files}
        )
        return self.execute(request, priority)

    def get_file(self, project_id: str, path: str, *, offline_fallback: bool = True) -> Future[str]:
        request: ApiRequest[str] = ApiRequest(
            "GET",
            f"/projects/{project_id}/files",
            params={"path": path},
            parse=lambda r: r.json()["content"],
        )
        return self.execute(request, offline_fallback=offline_fallback)

    def delete_file(
        self,
        project_id: str,
        path: str,
        *,
        priority: int = 1,
        offline_fallback: bool = True,
    ) -> Future[dict[str, Any]]:
        request: ApiRequest[dict[str, Any]] = ApiRequest(
            "DELETE", f"/projects/{project_id}/files", json={"path": path}
        )
        return self.execute(request, priority, offline_fallback=offline_fallback)

    def list_files(
        self,
        project_id: str,
        directory: str | None = None,
        *,
        offline_fallback: bool = True,
    ) -> Future[list[FileStats]]:
        request: ApiRequest[list[FileStats]] = ApiRequest(
            "GET",
            f"/projects/{project_id}/files/list",
            params={"directory": directory} if directory else None,
            parse=lambda r: [FileStats.from_dict(f) for f in r.json().get("files", [])],
        )
        return self.execute(request, offline_fallback=offline_fallback)

    # === Templates and prompts ===

    def get_templates(self, project_id: str, *, offline_fallback: bool = True) -> Future[list[str]]:
        request: ApiRequest[list[str]] = ApiRequest(
            "GET",
            f"/projects/{project_id}/templates",
            parse=lambda r: list(r.json().get("templates", [])),
        )
        return self.execute(request, offline_fallback=offline_fallback)

    def generate_prompt(
        self,
        project_id: str,
        template: str,
        file_path: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> Future[str]:
        body: dict[str, Any] = {"projectId": project_id, "template": template}
        if file_path is not None:
            body["filePath"] = file_path
        if context is not None:
            body["context"] = context
        request: ApiRequest[str] = ApiRequest(
            "POST",
            f"/projects/{project_id}/prompt",
            json=body,
            parse=lambda r: r.json()["prompt"],
        )
        return self.execute(request, offline_fallback=False)
