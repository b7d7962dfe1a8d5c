"""Google Drive remote store over the v3 REST API.

Uploads go through a resumable session: look up an existing file with
the same name in the folder, open a session (``PATCH`` on the existing
file, ``POST`` for a new one), then ``PUT`` the bytes to the session URL.
Every response is classified onto the upload error taxonomy, and 429s
are recorded on the circuit breaker.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from memorybook.exceptions import (
    PermanentUploadError,
    RateLimitError,
    TransientUploadError,
)
from memorybook.remote.circuit_breaker import RollingWindowCircuitBreaker
from memorybook.remote.rate_limiter import AdaptiveRateLimiter, RateLimiterConfig

logger = logging.getLogger(__name__)

DRIVE_API_URL = "https://www.googleapis.com/drive/v3"
DRIVE_UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
PDF_MIME_TYPE = "application/pdf"


class DriveRemoteStore:
    """Uploads bundles into a Drive folder.

    Usage::

        async with DriveRemoteStore(token) as remote:
            file_id = await remote.upload(folder_id, "Book (Part 1).pdf", data)

    Args:
        access_token: OAuth bearer token with Drive file scope.
        circuit_breaker: Shared breaker; a new one is created if omitted.
        rate_limiter: Request pacing; defaults to the ``standard`` tier.
        client: Pre-built ``httpx.AsyncClient`` (tests pass one with a
            ``MockTransport``). Closed by :meth:`close` only when owned.
        put_attempts: Attempts for the byte transfer on transport errors.
        retry_wait: Base of the exponential wait between those attempts.
    """

    def __init__(
        self,
        access_token: str,
        circuit_breaker: RollingWindowCircuitBreaker | None = None,
        rate_limiter: AdaptiveRateLimiter | None = None,
        client: httpx.AsyncClient | None = None,
        put_attempts: int = 3,
        retry_wait: float = 0.5,
    ) -> None:
        self._circuit_breaker = circuit_breaker or RollingWindowCircuitBreaker()
        self._rate_limiter = rate_limiter or AdaptiveRateLimiter(
            RateLimiterConfig(), self._circuit_breaker
        )
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=10.0))
        self._headers = {"Authorization": f"Bearer {access_token}"}
        self._put_attempts = put_attempts
        self._retry_wait = retry_wait

    @property
    def circuit_breaker(self) -> RollingWindowCircuitBreaker:
        return self._circuit_breaker

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> DriveRemoteStore:
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Response classification
    # ------------------------------------------------------------------

    def _check(self, response: httpx.Response, what: str) -> httpx.Response:
        """Map an HTTP error status onto the upload error taxonomy."""
        self._rate_limiter.observe_headers(response.headers)
        status = response.status_code
        if status < 400:
            return response
        detail = f"{what}: HTTP {status} {response.text[:200]}"
        if status == 429:
            self._circuit_breaker.record_429()
            raise RateLimitError(detail)
        self._circuit_breaker.record_error()
        if status >= 500 or status == 408:
            raise TransientUploadError(detail)
        raise PermanentUploadError(detail, status_code=status)

    async def _request(self, method: str, url: str, what: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as exc:
            self._circuit_breaker.record_error()
            raise TransientUploadError(f"{what}: {exc}") from exc
        return self._check(response, what)

    # ------------------------------------------------------------------
    # Upload steps
    # ------------------------------------------------------------------

    async def find_file(self, folder_id: str, filename: str) -> str | None:
        """Return the id of a non-trashed file named *filename* in *folder_id*."""
        escaped = filename.replace("\\", "\\\\").replace("'", "\\'")
        params = {
            "q": f"name='{escaped}' and '{folder_id}' in parents and trashed=false",
            "fields": "files(id)",
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
        }
        response = await self._request(
            "GET", f"{DRIVE_API_URL}/files", "lookup", params=params, headers=self._headers
        )
        files = response.json().get("files") or []
        return files[0]["id"] if files else None

    async def _open_session(
        self, folder_id: str, filename: str, size: int, existing_id: str | None
    ) -> str:
        headers = {
            **self._headers,
            "X-Upload-Content-Type": PDF_MIME_TYPE,
            "X-Upload-Content-Length": str(size),
        }
        metadata: dict[str, Any] = {"mimeType": PDF_MIME_TYPE}
        params = {"uploadType": "resumable", "supportsAllDrives": "true"}
        if existing_id:
            method, url = "PATCH", f"{DRIVE_UPLOAD_URL}/files/{existing_id}"
        else:
            method, url = "POST", f"{DRIVE_UPLOAD_URL}/files"
            metadata.update(name=filename, parents=[folder_id])

        response = await self._request(
            method, url, "session", params=params, headers=headers, json=metadata
        )
        location = response.headers.get("location")
        if not location:
            raise TransientUploadError(f"Drive returned no upload session URL for {filename}")
        return location

    async def _put_bytes(self, location: str, data: bytes) -> httpx.Response:
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                stop=stop_after_attempt(self._put_attempts),
                wait=wait_exponential(multiplier=self._retry_wait, max=8),
                reraise=True,
            ):
                with attempt:
                    response = await self._client.put(
                        location,
                        content=data,
                        headers={"Content-Type": PDF_MIME_TYPE},
                    )
        except httpx.TransportError as exc:
            self._circuit_breaker.record_error()
            raise TransientUploadError(f"transfer: {exc}") from exc
        return self._check(response, "transfer")

    async def upload(self, folder_id: str, filename: str, data: bytes) -> str:
        """Create or overwrite *filename* in *folder_id*. Returns the Drive file id."""
        await self._rate_limiter.wait_if_needed()
        existing_id = await self.find_file(folder_id, filename)
        location = await self._open_session(folder_id, filename, len(data), existing_id)
        response = await self._put_bytes(location, data)

        file_id = existing_id
        if response.content:
            file_id = response.json().get("id", file_id)
        if not file_id:
            raise TransientUploadError(f"Drive did not return a file id for {filename}")

        self._circuit_breaker.record_success()
        logger.info(
            "%s %s in folder %s (%d bytes)",
            "Updated" if existing_id else "Created",
            filename,
            folder_id,
            len(data),
        )
        return file_id

    async def delete(self, object_id: str) -> None:
        await self._rate_limiter.wait_if_needed()
        try:
            await self._request(
                "DELETE",
                f"{DRIVE_API_URL}/files/{object_id}",
                "delete",
                params={"supportsAllDrives": "true"},
                headers=self._headers,
            )
        except PermanentUploadError as exc:
            if exc.status_code != 404:
                raise
            logger.debug("Drive file %s already gone", object_id)
