"""Tests for the remote stores, circuit breaker and rate limiter."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from memorybook.exceptions import PermanentUploadError, RateLimitError, TransientUploadError
from memorybook.remote import (
    AdaptiveRateLimiter,
    CircuitState,
    DriveRemoteStore,
    LocalFolderStore,
    RateLimiterConfig,
    RemoteStore,
    RollingWindowCircuitBreaker,
    SupportsDelete,
)
from memorybook.remote.drive import DRIVE_API_URL, DRIVE_UPLOAD_URL


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# ======================================================================
# Circuit breaker
# ======================================================================


class TestCircuitBreaker:
    """CLOSED -> OPEN -> HALF_OPEN -> CLOSED."""

    def test_starts_closed(self):
        breaker = RollingWindowCircuitBreaker()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.error_rate == 0.0

    def test_consecutive_429s_trip(self):
        breaker = RollingWindowCircuitBreaker(window_size=100, error_threshold=1.0)
        for _ in range(2):
            breaker.record_429()
        assert not breaker.is_open
        breaker.record_429()
        assert breaker.is_open

    def test_error_rate_trips(self):
        breaker = RollingWindowCircuitBreaker(window_size=10, consecutive_threshold=100)
        for _ in range(6):
            breaker.record_success()
        breaker.record_429()
        breaker.record_success()
        breaker.record_429()
        assert not breaker.is_open
        breaker.record_429()
        assert breaker.error_rate == pytest.approx(0.3)
        assert breaker.is_open

    def test_non_429_errors_reset_the_streak(self):
        breaker = RollingWindowCircuitBreaker(window_size=100, error_threshold=1.0)
        breaker.record_429()
        breaker.record_429()
        breaker.record_error()
        breaker.record_429()
        assert not breaker.is_open

    def test_cooldown_then_trial_success_closes(self):
        clock = FakeClock()
        breaker = RollingWindowCircuitBreaker(
            consecutive_threshold=1, cooldown_seconds=30, clock=clock
        )
        breaker.record_429()
        assert breaker.state == CircuitState.OPEN

        clock.now = 29.9
        assert breaker.state == CircuitState.OPEN
        clock.now = 30.0
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.error_rate == 0.0

    def test_trial_429_reopens(self):
        clock = FakeClock()
        breaker = RollingWindowCircuitBreaker(
            consecutive_threshold=1, cooldown_seconds=10, clock=clock
        )
        breaker.record_429()
        clock.now = 10.0
        assert breaker.state == CircuitState.HALF_OPEN

        breaker.record_429()
        assert breaker.state == CircuitState.OPEN
        clock.now = 15.0
        assert breaker.is_open


# ======================================================================
# Rate limiter
# ======================================================================


class TestRateLimiter:
    """Tier intervals, breaker scaling and Retry-After."""

    @pytest.mark.parametrize(
        "tier,interval", [("conservative", 10.0), ("standard", 1.0), ("burst", 0.1)]
    )
    def test_tier_intervals(self, tier, interval):
        assert RateLimiterConfig(tier).min_request_interval == pytest.approx(interval)

    def test_unknown_tier_rejected(self):
        with pytest.raises(ValueError, match="Unknown rate limit tier"):
            RateLimiterConfig("warp")

    def test_interval_scales_with_breaker_state(self):
        clock = FakeClock()
        breaker = RollingWindowCircuitBreaker(
            consecutive_threshold=1, cooldown_seconds=10, clock=clock
        )
        limiter = AdaptiveRateLimiter(RateLimiterConfig("standard"), breaker, clock=clock)
        assert limiter.current_interval() == pytest.approx(1.0)

        breaker.record_429()
        assert limiter.current_interval() == pytest.approx(3.0)

        clock.now = 10.0
        assert limiter.current_interval() == pytest.approx(1.5)

    def test_retry_after_raises_interval(self):
        limiter = AdaptiveRateLimiter(RateLimiterConfig("burst"), RollingWindowCircuitBreaker())
        limiter.observe_headers({"retry-after": "7"})
        assert limiter.current_interval() == pytest.approx(7.0)

    def test_non_numeric_retry_after_ignored(self):
        limiter = AdaptiveRateLimiter(RateLimiterConfig("burst"), RollingWindowCircuitBreaker())
        limiter.observe_headers({"retry-after": "Wed, 21 Oct 2015 07:28:00 GMT"})
        assert limiter.current_interval() == pytest.approx(0.1)

    @pytest.mark.asyncio
    async def test_sleeps_only_the_remaining_time(self):
        clock = FakeClock(100.0)
        limiter = AdaptiveRateLimiter(
            RateLimiterConfig("standard"), RollingWindowCircuitBreaker(clock=clock), clock=clock
        )
        with patch(
            "memorybook.remote.rate_limiter.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            await limiter.wait_if_needed()
            mock_sleep.assert_not_called()

            clock.now = 100.25
            await limiter.wait_if_needed()
            mock_sleep.assert_awaited_once()
            assert mock_sleep.await_args.args[0] == pytest.approx(0.75)

            clock.now = 105.0
            await limiter.wait_if_needed()
            assert mock_sleep.await_count == 1


# ======================================================================
# Drive
# ======================================================================


class DriveHandler:
    """MockTransport handler emulating the three Drive upload calls."""

    def __init__(self, existing_id: str | None = None) -> None:
        self.existing_id = existing_id
        self.requests: list[httpx.Request] = []
        self.lookup_status = 200
        self.put_status = 200
        self.delete_status = 204
        self.put_failures = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        if request.method == "GET" and url.startswith(f"{DRIVE_API_URL}/files"):
            if self.lookup_status != 200:
                return httpx.Response(
                    self.lookup_status, headers={"Retry-After": "2"}, text="slow down"
                )
            files = [{"id": self.existing_id}] if self.existing_id else []
            return httpx.Response(200, json={"files": files})
        if request.method in ("POST", "PATCH") and url.startswith(DRIVE_UPLOAD_URL):
            return httpx.Response(200, headers={"Location": "https://upload.example/session/1"})
        if request.method == "PUT":
            if self.put_failures:
                self.put_failures -= 1
                raise httpx.ConnectError("connection reset", request=request)
            if self.put_status != 200:
                return httpx.Response(self.put_status, text="nope")
            return httpx.Response(200, json={"id": self.existing_id or "new-file-id"})
        if request.method == "DELETE":
            return httpx.Response(self.delete_status)
        return httpx.Response(404)


def make_drive(handler: DriveHandler, breaker: RollingWindowCircuitBreaker | None = None):
    breaker = breaker or RollingWindowCircuitBreaker()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    limiter = AdaptiveRateLimiter(RateLimiterConfig("burst"), breaker)
    return DriveRemoteStore(
        "token-123",
        circuit_breaker=breaker,
        rate_limiter=limiter,
        client=client,
        retry_wait=0,
    )


class TestDriveRemoteStore:
    """Create/update via resumable sessions and error classification."""

    @pytest.mark.asyncio
    async def test_creates_new_file(self):
        handler = DriveHandler()
        async with make_drive(handler) as drive:
            file_id = await drive.upload("folder-9", "Book (Part 1).pdf", b"%PDF-1.7 data")

        assert file_id == "new-file-id"
        lookup, session, put = handler.requests
        assert "name='Book (Part 1).pdf'" in lookup.url.params["q"]
        assert "'folder-9' in parents" in lookup.url.params["q"]
        assert lookup.headers["Authorization"] == "Bearer token-123"
        assert session.method == "POST"
        assert session.url.params["uploadType"] == "resumable"
        assert json.loads(session.content) == {
            "mimeType": "application/pdf",
            "name": "Book (Part 1).pdf",
            "parents": ["folder-9"],
        }
        assert put.content == b"%PDF-1.7 data"

    @pytest.mark.asyncio
    async def test_overwrites_existing_file(self):
        handler = DriveHandler(existing_id="abc")
        async with make_drive(handler) as drive:
            file_id = await drive.upload("folder-9", "Book (Part 1).pdf", b"x")

        assert file_id == "abc"
        session = handler.requests[1]
        assert session.method == "PATCH"
        assert str(session.url).startswith(f"{DRIVE_UPLOAD_URL}/files/abc")

    @pytest.mark.asyncio
    async def test_quotes_in_filename_are_escaped(self):
        handler = DriveHandler()
        async with make_drive(handler) as drive:
            await drive.upload("f", "Dad's Book.pdf", b"x")
        assert "name='Dad\\'s Book.pdf'" in handler.requests[0].url.params["q"]

    @pytest.mark.asyncio
    async def test_429_raises_rate_limit_and_records_on_breaker(self):
        handler = DriveHandler()
        handler.lookup_status = 429
        breaker = RollingWindowCircuitBreaker(consecutive_threshold=1)
        async with make_drive(handler, breaker) as drive:
            with pytest.raises(RateLimitError):
                await drive.upload("f", "a.pdf", b"x")

        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        handler = DriveHandler()
        handler.put_status = 503
        async with make_drive(handler) as drive:
            with pytest.raises(TransientUploadError):
                await drive.upload("f", "a.pdf", b"x")

    @pytest.mark.asyncio
    async def test_client_error_is_permanent(self):
        handler = DriveHandler()
        handler.lookup_status = 403
        async with make_drive(handler) as drive:
            with pytest.raises(PermanentUploadError) as exc_info:
                await drive.upload("f", "a.pdf", b"x")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_transfer_retried_on_transport_error(self):
        handler = DriveHandler()
        handler.put_failures = 1
        async with make_drive(handler) as drive:
            assert await drive.upload("f", "a.pdf", b"x") == "new-file-id"
        assert [r.method for r in handler.requests] == ["GET", "POST", "PUT", "PUT"]

    @pytest.mark.asyncio
    async def test_transfer_gives_up_after_attempts(self):
        handler = DriveHandler()
        handler.put_failures = 5
        async with make_drive(handler) as drive:
            with pytest.raises(TransientUploadError, match="transfer"):
                await drive.upload("f", "a.pdf", b"x")

    @pytest.mark.asyncio
    async def test_delete_ignores_missing_file(self):
        handler = DriveHandler()
        handler.delete_status = 404
        async with make_drive(handler) as drive:
            await drive.delete("gone")
        assert handler.requests[-1].method == "DELETE"

    @pytest.mark.asyncio
    async def test_delete_propagates_other_errors(self):
        handler = DriveHandler()
        handler.delete_status = 403
        async with make_drive(handler) as drive:
            with pytest.raises(PermanentUploadError):
                await drive.delete("locked")

    def test_satisfies_protocols(self):
        drive = make_drive(DriveHandler())
        assert isinstance(drive, RemoteStore)
        assert isinstance(drive, SupportsDelete)


# ======================================================================
# Local folder
# ======================================================================


class TestLocalFolderStore:
    @pytest.mark.asyncio
    async def test_writes_bundle_into_folder(self, tmp_path):
        store = LocalFolderStore(tmp_path)
        object_id = await store.upload("album", "Book (Part 1).pdf", b"pdf-bytes")

        target = tmp_path / "album" / "Book (Part 1).pdf"
        assert object_id == str(target)
        assert target.read_bytes() == b"pdf-bytes"

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, tmp_path):
        store = LocalFolderStore(tmp_path)
        await store.upload("album", "a.pdf", b"one")
        await store.upload("album", "a.pdf", b"two")

        assert [p.name for p in (tmp_path / "album").iterdir()] == ["a.pdf"]
        assert (tmp_path / "album" / "a.pdf").read_bytes() == b"two"

    @pytest.mark.asyncio
    async def test_path_components_are_stripped(self, tmp_path):
        store = LocalFolderStore(tmp_path)
        object_id = await store.upload("album", "../escape.pdf", b"x")
        assert object_id == str(tmp_path / "album" / "escape.pdf")

    @pytest.mark.asyncio
    async def test_invalid_filename_is_permanent(self, tmp_path):
        with pytest.raises(PermanentUploadError):
            await LocalFolderStore(tmp_path).upload("album", "..", b"x")

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path):
        store = LocalFolderStore(tmp_path)
        object_id = await store.upload("album", "a.pdf", b"x")
        await store.delete(object_id)
        await store.delete(object_id)
        assert not (tmp_path / "album" / "a.pdf").exists()
