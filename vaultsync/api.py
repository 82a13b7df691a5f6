"""Async API client for the vault sync server."""

from __future__ import annotations

import asyncio
import logging
import random
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from .config import config
from .exceptions import (
    VaultAuthenticationError,
    VaultConfigError,
    VaultConflictError,
    VaultInvalidResponseError,
    VaultNetworkError,
    VaultNotFoundError,
    VaultPermissionError,
    VaultRateLimitError,
    VaultSyncError,
    VaultValidationError,
)
from .utils import format_iso_timestamp

logger = logging.getLogger(__name__)


def _encode_path(file_path: str) -> str:
    return quote(file_path, safe="")


class VaultSyncClient:
    """Client for the vault sync REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        api_url: str | None = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the API client.

        Args:
            api_key: Optional API key (uses config if not provided)
            api_url: Optional API URL (uses config if not provided)
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport (used by tests)
        """
        self.api_key = api_key or config.api_key
        self.api_url = (api_url or config.api_url).rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._transport = transport

        if not self.api_key:
            raise VaultConfigError(
                "API key not configured. "
                "Please set VAULTSYNC_API_KEY environment variable."
            )

        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> VaultSyncClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            exception: The exception that occurred
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried, False otherwise
        """
        if attempt >= self.max_retries:
            return False

        # Network and rate limit errors are transient
        if isinstance(exception, VaultNetworkError):
            return True

        if isinstance(exception, httpx.HTTPStatusError):
            return 500 <= exception.response.status_code < 600

        # Don't retry on client errors (authentication, permission, etc.)
        return False

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds
        """
        base_delay = self.retry_delay * (2**attempt)
        # Add jitter: +/- 25% of base delay
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    @staticmethod
    def _error_detail(response: httpx.Response) -> str | None:
        """Extract an error message from a JSON error body, if any."""
        try:
            if not response.content:
                return None
            error_data = response.json()
        except ValueError:
            return None
        if not isinstance(error_data, dict):
            return None
        error = error_data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        return error_data.get("message") or error or error_data.get("detail")

    def _handle_http_error(
        self, e: httpx.HTTPStatusError, attempt: int
    ) -> tuple[Exception, bool]:
        """Handle HTTP errors and determine if retry should occur.

        Args:
            e: The HTTP error exception
            attempt: Current attempt number

        Returns:
            Tuple of (exception to raise, should_retry)

        Raises:
            VaultSyncError: Directly for errors that are never retried
        """
        status_code = e.response.status_code
        detail = self._error_detail(e.response)
        context = {"status": status_code, "url": str(e.request.url)}

        if status_code == 401:
            raise VaultAuthenticationError(
                "Invalid API key or unauthorized access", context=context
            ) from e
        elif status_code == 403:
            raise VaultPermissionError(
                "Access forbidden - check your permissions", context=context
            ) from e
        elif status_code == 404:
            raise VaultNotFoundError(detail or "Resource not found", context=context) from e
        elif status_code == 409:
            raise VaultConflictError(detail or "Conflicting change", context=context) from e
        elif status_code in (400, 422):
            raise VaultValidationError(
                detail or f"Request rejected with status {status_code}",
                context=context,
            ) from e
        elif status_code == 429:
            error = VaultRateLimitError(
                "Rate limit exceeded - please try again later", context=context
            )
            return (error, attempt < self.max_retries)

        error_msg = f"API request failed with status {status_code}"
        if detail:
            error_msg = f"{error_msg}: {detail}"
        server_error = 500 <= status_code < 600
        # Server errors stay retryable for the queue after our own retries
        error_class = VaultNetworkError if server_error else VaultSyncError
        error = error_class(error_msg, context=context)
        should_retry = server_error and attempt < self.max_retries
        return (error, should_retry)

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Make an API request with retry logic.

        Args:
            method: HTTP method
            endpoint: API endpoint path
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response JSON data

        Raises:
            VaultSyncError: If the request fails after all retries
        """
        url = f"{self.api_url}/{endpoint.lstrip('/')}"
        last_exception: Exception | None = None
        client = self._get_client()

        for attempt in range(self.max_retries + 1):
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
                logger.debug("%s %s %s", method, endpoint, response.status_code)

                if not response.content:
                    return {}
                content_type = response.headers.get("Content-Type", "")
                if "application/json" not in content_type:
                    if "text/html" in content_type:
                        raise VaultAuthenticationError(
                            "Invalid API key - server returned HTML instead of JSON"
                        )
                    raise VaultInvalidResponseError(
                        f"Unexpected response type: {content_type}"
                    )
                try:
                    return response.json()
                except ValueError as e:
                    raise VaultInvalidResponseError(
                        "Invalid JSON response from server"
                    ) from e

            except httpx.HTTPStatusError as e:
                error, should_retry = self._handle_http_error(e, attempt)
                last_exception = error

                if should_retry:
                    # Rate limits: honour the Retry-After header
                    retry_after = e.response.headers.get("Retry-After")
                    if (
                        isinstance(error, VaultRateLimitError)
                        and retry_after
                        and retry_after.isdigit()
                    ):
                        delay = float(retry_after)
                    else:
                        delay = self._calculate_retry_delay(attempt)
                    logger.debug(
                        "Retrying %s %s in %.2fs (%s)", method, endpoint, delay, error
                    )
                    await asyncio.sleep(delay)
                    continue
                raise error from e
            except VaultSyncError:
                raise
            except httpx.RequestError as e:
                error = VaultNetworkError(f"Network error: {e}")
                last_exception = error
                if self._should_retry(error, attempt):
                    delay = self._calculate_retry_delay(attempt)
                    await asyncio.sleep(delay)
                    continue
                raise error from e

        if last_exception:
            raise last_exception
        raise VaultSyncError("Request failed after all retry attempts")

    @staticmethod
    def _files_from(response: Any) -> list[dict[str, Any]]:
        if isinstance(response, list):
            return response
        if isinstance(response, dict):
            files = response.get("files", response.get("data", []))
            if isinstance(files, list):
                return files
        raise VaultInvalidResponseError("File listing response has no file list")

    # =========================
    # File Operations
    # =========================

    async def list_files(self, vault_id: str) -> list[dict[str, Any]]:
        """List all files in a vault.

        Args:
            vault_id: Vault identifier

        Returns:
            List of file dictionaries with ``path``, ``hash``, ``updated_at``,
            ``size_bytes`` and ``file_id``
        """
        response = await self._request("GET", f"/vaults/{vault_id}/files")
        return self._files_from(response)

    async def get_changed_files(
        self, vault_id: str, since: datetime
    ) -> list[dict[str, Any]]:
        """List files changed on the server since a point in time.

        Args:
            vault_id: Vault identifier
            since: Only files modified after this time are returned

        Returns:
            List of file dictionaries (same shape as :meth:`list_files`)
        """
        response = await self._request(
            "GET",
            f"/vaults/{vault_id}/files/changes",
            params={"since": format_iso_timestamp(since)},
        )
        return self._files_from(response)

    async def get_file_by_path(self, vault_id: str, file_path: str) -> dict[str, Any]:
        """Fetch a file with its content.

        Args:
            vault_id: Vault identifier
            file_path: Vault-relative path

        Returns:
            Dictionary with ``content``, ``hash``, ``file_id`` and timestamps

        Raises:
            VaultNotFoundError: If the file does not exist (never retried)
        """
        return await self._request(
            "GET", f"/vaults/{vault_id}/files/path/{_encode_path(file_path)}"
        )

    async def get_file_hash(self, vault_id: str, file_path: str) -> str:
        response = await self._request(
            "GET", f"/vaults/{vault_id}/files/path/{_encode_path(file_path)}/hash"
        )
        return response.get("hash", "")

    async def file_exists(self, vault_id: str, file_path: str) -> bool:
        """Check whether a file exists without downloading it.

        A 404 is expected here and is not logged as an error.
        """
        client = self._get_client()
        url = f"{self.api_url}/vaults/{vault_id}/files/path/{_encode_path(file_path)}"
        try:
            response = await client.head(url)
        except httpx.RequestError as e:
            raise VaultNetworkError(f"Network error: {e}") from e
        if response.status_code == 401:
            raise VaultAuthenticationError("Invalid API key or unauthorized access")
        return response.status_code == 200

    async def create_file(
        self, vault_id: str, file_path: str, content: str
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/vaults/{vault_id}/files",
            json={"path": file_path, "content": content},
        )

    async def update_file(
        self,
        vault_id: str,
        file_id: str,
        content: str,
        hash: str | None = None,
    ) -> dict[str, Any]:
        """Replace the content of an existing file.

        Args:
            vault_id: Vault identifier
            file_id: Remote file identifier
            content: New content
            hash: Optional expected hash of the new content
        """
        payload: dict[str, Any] = {"content": content}
        if hash is not None:
            payload["hash"] = hash
        return await self._request(
            "PUT", f"/vaults/{vault_id}/files/{file_id}", json=payload
        )

    async def delete_file(self, vault_id: str, file_id: str) -> None:
        await self._request("DELETE", f"/vaults/{vault_id}/files/{file_id}")

    async def apply_delta(
        self, vault_id: str, file_path: str, delta: dict[str, Any]
    ) -> dict[str, Any]:
        """Send a line delta for a file the server already has.

        Args:
            vault_id: Vault identifier
            file_path: Vault-relative path
            delta: Encoded delta (see ``vaultsync.sync.delta.encode_delta``)

        Returns:
            Updated file info including the resulting ``hash``
        """
        return await self._request(
            "POST",
            f"/vaults/{vault_id}/files/path/{_encode_path(file_path)}/delta",
            json=delta,
        )

    async def upload_chunk(
        self,
        vault_id: str,
        file_path: str,
        chunk: bytes,
        chunk_index: int,
        total_chunks: int,
        overwrite: bool = True,
    ) -> dict[str, Any]:
        """Upload one chunk of a large file.

        Returns:
            Server response with ``isComplete`` and, on the last chunk, ``file``
        """
        filename = file_path.rsplit("/", 1)[-1]
        return await self._request(
            "POST",
            f"/vaults/{vault_id}/files/upload/chunk",
            files={"files": (filename, chunk)},
            data={
                "filename": filename,
                "chunkIndex": str(chunk_index),
                "totalChunks": str(total_chunks),
                "path": file_path,
                "overwrite": "true" if overwrite else "false",
            },
        )

    async def health_check(self) -> bool:
        """Check whether the server is reachable and healthy."""
        try:
            response = await self._get_client().get(f"{self.api_url}/health")
        except httpx.RequestError:
            return False
        return response.status_code == 200
