"""Tests for the resilient synclink API client."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from datetime import datetime
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from synclink.client.api import (
    APIError,
    ApiRequest,
    AuthenticationError,
    CircuitOpenError,
    ClientError,
    FileStats,
    NetworkError,
    NotFoundError,
    ProjectInfo,
    ResilientApiClient,
    RetryBudgetExceededError,
    ServerError,
)
from synclink.core.config import ClientConfig, RetryConfig, ServerConfig

BASE = "https://api.test"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_client(
    clock: FakeClock, sleeps: list[float]
) -> Iterator[Callable[..., ResilientApiClient]]:
    """Factory for clients with fake time and no background probing."""
    clients: list[ResilientApiClient] = []

    def factory(auth: Any = None, **retry: Any) -> ResilientApiClient:
        retry_values: dict[str, Any] = {"jitter": 0.0, "health_check_interval": 3600.0}
        retry_values.update(retry)
        client = ResilientApiClient(
            ServerConfig(api_endpoint=BASE),
            auth,
            RetryConfig(**retry_values),
            ClientConfig(cache_ttl=60.0),
            sleep=sleeps.append,
            clock=clock,
        )
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


def make_auth(*tokens: str) -> MagicMock:
    """Create a mock AuthService handing out the given tokens in turn."""
    auth = MagicMock()
    headers = [{"Authorization": f"Bearer {token}"} for token in tokens]
    auth.auth_headers.side_effect = headers + [headers[-1]] * 10
    return auth


PROJECT = {"id": "p1", "name": "Demo", "status": "active"}


class TestDataTypes:
    """Tests for response dataclasses and requests."""

    def test_project_from_dict(self) -> None:
        data = {
            "id": 42,
            "name": "Demo",
            "status": "active",
            "description": "A project",
            "createdAt": "2025-01-01T10:00:00",
            "updatedAt": "2025-01-02T15:30:00",
        }

        project = ProjectInfo.from_dict(data)

        assert project.id == "42"
        assert project.description == "A project"
        assert project.created_at == datetime(2025, 1, 1, 10, 0, 0)
        assert project.updated_at == datetime(2025, 1, 2, 15, 30, 0)

    def test_project_from_dict_minimal(self) -> None:
        project = ProjectInfo.from_dict({"id": "p1", "name": "Demo"})

        assert project.status == "unknown"
        assert project.created_at is None

    def test_file_stats_from_dict(self) -> None:
        stats = FileStats.from_dict(
            {"path": "a.txt", "size": "12", "lastModified": "2025-01-01", "contentType": "text/plain"}
        )
        assert stats.size == 12
        assert stats.content_type == "text/plain"

    def test_cache_key_normalizes(self) -> None:
        a: ApiRequest[Any] = ApiRequest("get", "/projects/", params={"b": 2, "a": 1})
        b: ApiRequest[Any] = ApiRequest("GET", "/projects", params={"a": "1", "b": "2"})

        assert a.method == "GET"
        assert a.cache_key == b.cache_key
        assert a.is_read_only is True
        assert ApiRequest("POST", "/projects").is_read_only is False


class TestRequests:
    """Tests for typed operations against a mocked server."""

    def test_get_project_sends_bearer_token(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{BASE}/projects/p1", json=PROJECT)
        client = make_client(make_auth("t1"))

        project = client.get_project("p1").result()

        assert project.name == "Demo"
        request = httpx_mock.get_requests()[0]
        assert request.headers["Authorization"] == "Bearer t1"
        assert request.headers["User-Agent"].startswith("synclink/")

    def test_list_projects(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{BASE}/projects", json={"projects": [PROJECT]})
        client = make_client()

        projects = client.list_projects().result()

        assert [p.id for p in projects] == ["p1"]

    def test_upsert_file_body(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(method="POST", url=f"{BASE}/projects/p1/files", json={"ok": True})
        client = make_client()

        result = client.upsert_file("p1", "src/a.txt", "hello").result()

        assert result == {"ok": True}
        body = json.loads(httpx_mock.get_requests()[0].content)
        assert body == {"path": "src/a.txt", "content": "hello"}

    def test_delete_file_body(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(method="DELETE", url=f"{BASE}/projects/p1/files", json={"ok": True})
        client = make_client()

        client.delete_file("p1", "src/a.txt").result()

        assert json.loads(httpx_mock.get_requests()[0].content) == {"path": "src/a.txt"}

    def test_get_file_content(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url=f"{BASE}/projects/p1/files?path=src%2Fa.txt", json={"content": "hello"}
        )
        client = make_client()

        assert client.get_file("p1", "src/a.txt").result() == "hello"

    def test_invalid_response_is_api_error(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{BASE}/projects/p1/files?path=a.txt", json={})
        client = make_client()

        with pytest.raises(APIError, match="Invalid response"):
            client.get_file("p1", "a.txt").result()

    def test_generate_prompt(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="POST", url=f"{BASE}/projects/p1/prompt", json={"prompt": "Do X"}
        )
        client = make_client()

        prompt = client.generate_prompt("p1", "review", file_path="a.py").result()

        assert prompt == "Do X"
        body = json.loads(httpx_mock.get_requests()[0].content)
        assert body == {"projectId": "p1", "template": "review", "filePath": "a.py"}

    def test_health_check(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{BASE}/healthcheck", status_code=200)
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=f"{BASE}/healthcheck")
        client = make_client()

        assert client.health_check() is True
        assert client.health_check() is False

    def test_verify_credentials_rejected(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{BASE}/auth/verify", status_code=401)
        client = make_client()

        assert client.verify_credentials() is False


class TestCache:
    """Tests for the read-response cache."""

    def test_repeated_read_served_from_cache(self, httpx_mock, make_client, clock) -> None:  # type: ignore[no-untyped-def]
        """Two reads within the TTL issue one request; after the TTL, two."""
        httpx_mock.add_response(url=f"{BASE}/projects/p1", json=PROJECT)
        httpx_mock.add_response(url=f"{BASE}/projects/p1", json={**PROJECT, "name": "Renamed"})
        client = make_client()

        first = client.get_project("p1").result()
        clock.advance(30)
        second = client.get_project("p1").result()
        assert second.name == first.name
        assert len(httpx_mock.get_requests()) == 1

        clock.advance(30)
        third = client.get_project("p1").result()
        assert third.name == "Renamed"
        assert len(httpx_mock.get_requests()) == 2

    def test_writes_not_cached(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        for _ in range(2):
            httpx_mock.add_response(method="POST", url=f"{BASE}/projects/p1/sync", json={})
        client = make_client()

        client.sync_project("p1").result()
        client.sync_project("p1").result()

        assert len(httpx_mock.get_requests()) == 2
        assert len(client.cache) == 0


class TestRetries:
    """Tests for retry classification and backoff."""

    def test_client_error_not_retried(self, httpx_mock, make_client, sleeps) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            method="POST", url=f"{BASE}/projects", status_code=400, json={"detail": "Name required"}
        )
        client = make_client()

        future = client.create_project("")

        error = future.exception()
        assert isinstance(error, ClientError)
        assert error.status_code == 400
        assert str(error) == "Name required"
        assert len(httpx_mock.get_requests()) == 1
        assert sleeps == []

    def test_not_found(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{BASE}/projects/missing", status_code=404)
        client = make_client()

        with pytest.raises(NotFoundError):
            client.get_project("missing").result()

    def test_server_error_backoff(self, httpx_mock, make_client, sleeps) -> None:  # type: ignore[no-untyped-def]
        """Two 503s then success: delays of 1s and 2s, result delivered."""
        httpx_mock.add_response(url=f"{BASE}/projects/p1", status_code=503)
        httpx_mock.add_response(url=f"{BASE}/projects/p1", status_code=503)
        httpx_mock.add_response(url=f"{BASE}/projects/p1", json=PROJECT)
        client = make_client()

        project = client.get_project("p1").result()

        assert project.id == "p1"
        assert sleeps == [1.0, 2.0]
        assert client.circuit_state.failure_count == 0

    def test_server_error_after_all_attempts(self, httpx_mock, make_client, sleeps) -> None:  # type: ignore[no-untyped-def]
        for _ in range(3):
            httpx_mock.add_response(url=f"{BASE}/projects/p1", status_code=500)
        client = make_client()

        error = client.get_project("p1").exception()

        assert isinstance(error, ServerError)
        assert error.status_code == 500
        assert len(sleeps) == 2
        assert client.pending_count == 0

    def test_rate_limit_honors_retry_after(self, httpx_mock, make_client, sleeps) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(
            url=f"{BASE}/projects/p1", status_code=429, headers={"Retry-After": "7"}
        )
        httpx_mock.add_response(url=f"{BASE}/projects/p1", json=PROJECT)
        client = make_client()

        client.get_project("p1").result()

        assert sleeps == [7.0]

    def test_unauthorized_refreshes_once(self, httpx_mock, make_client, sleeps) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{BASE}/projects/p1", status_code=401)
        httpx_mock.add_response(url=f"{BASE}/projects/p1", json=PROJECT)
        auth = make_auth("old", "new")
        client = make_client(auth)

        client.get_project("p1").result()

        auth.refresh_access_token.assert_called_once()
        tokens = [r.headers["Authorization"] for r in httpx_mock.get_requests()]
        assert tokens == ["Bearer old", "Bearer new"]
        assert sleeps == []

    def test_unauthorized_after_refresh(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{BASE}/projects/p1", status_code=401)
        httpx_mock.add_response(url=f"{BASE}/projects/p1", status_code=401)
        client = make_client(make_auth("old", "new"))

        with pytest.raises(AuthenticationError):
            client.get_project("p1").result()

    def test_refresh_failure_surfaces(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_response(url=f"{BASE}/projects/p1", status_code=401)
        auth = make_auth("old")
        auth.refresh_access_token.side_effect = AuthenticationError("Failed to refresh access token")
        client = make_client(auth)

        with pytest.raises(AuthenticationError, match="refresh"):
            client.get_project("p1").result()


class TestCircuitBreaker:
    """Tests for client-wide circuit breaking."""

    def test_opens_after_five_failures(self, httpx_mock, make_client, clock) -> None:  # type: ignore[no-untyped-def]
        """The sixth call is queued without a request; calls resume after the cool-down."""
        for _ in range(5):
            httpx_mock.add_response(url=f"{BASE}/projects/p1", status_code=500)
        httpx_mock.add_response(url=f"{BASE}/projects/p2", json={**PROJECT, "id": "p2"})
        client = make_client(max_attempts=1)

        for _ in range(5):
            assert isinstance(client.get_project("p1").exception(), ServerError)
        assert client.circuit_state.open is True

        queued = client.get_project("p1")
        assert not queued.done()
        assert client.pending_count == 1
        assert len(httpx_mock.get_requests()) == 5

        with pytest.raises(CircuitOpenError):
            client.get_project("p1", offline_fallback=False).result()

        clock.advance(30)
        assert client.get_project("p2").result().id == "p2"
        assert client.circuit_state.open is False


class TestOfflineQueue:
    """Tests for offline queuing and draining."""

    def test_network_failure_queues_and_drains(self, httpx_mock, make_client, sleeps) -> None:  # type: ignore[no-untyped-def]
        for _ in range(3):
            httpx_mock.add_exception(httpx.ConnectError("refused"), url=f"{BASE}/projects/p1")
        client = make_client()

        future = client.get_project("p1")

        assert not future.done()
        assert client.online is False
        assert client.pending_count == 1
        assert sleeps == [1.0, 2.0]

        httpx_mock.add_response(url=f"{BASE}/healthcheck")
        httpx_mock.add_response(url=f"{BASE}/projects/p1", json=PROJECT)

        assert client.check_connectivity() is True
        assert client.drain_pending() == 1
        assert future.result(timeout=1).id == "p1"
        assert client.pending_count == 0

    def test_offline_without_fallback_fails_fast(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=f"{BASE}/projects/p1")
        client = make_client(max_attempts=1)
        client.get_project("p1")

        with pytest.raises(NetworkError, match="offline"):
            client.get_project("p2", offline_fallback=False).result()
        assert len(httpx_mock.get_requests()) == 1

    def test_drain_in_priority_order(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        """Higher priority first, then oldest first."""
        url = f"{BASE}/projects/p1/files"
        httpx_mock.add_exception(httpx.ConnectError("refused"), method="POST", url=url)
        client = make_client(max_attempts=1)

        client.upsert_file("p1", "low.txt", "x", priority=1)
        client.upsert_file("p1", "high-1.txt", "x", priority=5)
        client.upsert_file("p1", "high-2.txt", "x", priority=5)
        assert client.pending_count == 3

        httpx_mock.add_response(url=f"{BASE}/healthcheck")
        for _ in range(3):
            httpx_mock.add_response(method="POST", url=url, json={"ok": True})
        client.check_connectivity()

        assert client.drain_pending() == 3
        posted = [json.loads(r.content)["path"] for r in httpx_mock.get_requests(method="POST")]
        assert posted[1:] == ["high-1.txt", "high-2.txt", "low.txt"]

    def test_drain_stops_when_offline_again(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        url = f"{BASE}/projects/p1/files"
        httpx_mock.add_exception(httpx.ConnectError("refused"), method="POST", url=url)
        client = make_client(max_attempts=1)
        first = client.upsert_file("p1", "a.txt", "x")
        client.upsert_file("p1", "b.txt", "x")

        httpx_mock.add_response(url=f"{BASE}/healthcheck")
        httpx_mock.add_exception(httpx.ConnectError("refused"), method="POST", url=url)
        client.check_connectivity()

        assert client.drain_pending() == 0
        assert client.online is False
        assert client.pending_count == 2
        assert not first.done()

    def test_retry_budget_exceeded(self, httpx_mock, make_client, clock) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=f"{BASE}/projects/p1")
        client = make_client(max_attempts=1, retry_budget=60.0)
        future = client.get_project("p1")

        clock.advance(61)
        httpx_mock.add_response(url=f"{BASE}/healthcheck")
        client.check_connectivity()

        assert client.drain_pending() == 1
        with pytest.raises(RetryBudgetExceededError):
            future.result(timeout=1)
        assert len(httpx_mock.get_requests(url=f"{BASE}/projects/p1")) == 1

    def test_drain_delivers_permanent_errors(self, httpx_mock, make_client) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=f"{BASE}/projects/p1")
        client = make_client(max_attempts=1)
        future = client.get_project("p1")

        httpx_mock.add_response(url=f"{BASE}/healthcheck")
        httpx_mock.add_response(url=f"{BASE}/projects/p1", status_code=404)
        client.check_connectivity()
        client.drain_pending()

        assert isinstance(future.exception(timeout=1), NotFoundError)

    def test_close_cancels_pending(self, httpx_mock, clock, sleeps) -> None:  # type: ignore[no-untyped-def]
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=f"{BASE}/projects/p1")
        client = ResilientApiClient(
            ServerConfig(api_endpoint=BASE),
            retry_config=RetryConfig(max_attempts=1, health_check_interval=3600.0),
            sleep=sleeps.append,
            clock=clock,
        )
        future = client.get_project("p1")

        client.close()

        assert future.cancelled()
        assert client.pending_count == 0
