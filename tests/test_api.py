"""Unit tests for the vault sync API client."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import httpx
import pytest

from vaultsync.api import VaultSyncClient
from vaultsync.exceptions import (
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

API_URL = "https://sync.example.test/v1"


def make_client(handler, **kwargs):
    """Create a client whose requests are answered by ``handler``."""
    kwargs.setdefault("retry_delay", 0)
    return VaultSyncClient(
        api_key="test_key",
        api_url=API_URL,
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class Recorder:
    """Request handler answering every request with the same response."""

    def __init__(self, status_code=200, json_body=None, **response_kwargs):
        self.requests = []
        self.status_code = status_code
        self.json_body = json_body
        self.response_kwargs = response_kwargs

    def __call__(self, request):
        self.requests.append(request)
        if self.json_body is not None:
            return httpx.Response(self.status_code, json=self.json_body)
        return httpx.Response(self.status_code, **self.response_kwargs)


class TestVaultSyncClient:
    """Tests for VaultSyncClient initialization."""

    def test_init_with_api_key(self):
        client = VaultSyncClient(api_key="test_key", api_url=API_URL + "/")
        assert client.api_key == "test_key"
        assert client.api_url == API_URL

    def test_init_without_api_key_raises_error(self):
        with patch("vaultsync.api.config") as mock_config:
            mock_config.api_key = None
            mock_config.api_url = API_URL
            with pytest.raises(VaultConfigError, match="API key not configured"):
                VaultSyncClient()

    @pytest.mark.asyncio
    async def test_authorization_header(self):
        handler = Recorder(json_body=[])
        async with make_client(handler) as client:
            await client.list_files("v1")
        assert handler.requests[0].headers["Authorization"] == "Bearer test_key"

    @pytest.mark.asyncio
    async def test_close_releases_client(self):
        client = make_client(Recorder(json_body=[]))
        await client.list_files("v1")
        await client.close()
        assert client._client is None


class TestAPIRequest:
    """Tests for response handling in _request."""

    @pytest.mark.asyncio
    async def test_empty_response(self):
        async with make_client(Recorder(204)) as client:
            assert await client._request("DELETE", "/anything") == {}

    @pytest.mark.asyncio
    async def test_html_response_raises_auth_error(self):
        handler = Recorder(
            200, content=b"<html>login</html>", headers={"Content-Type": "text/html"}
        )
        async with make_client(handler) as client:
            with pytest.raises(VaultAuthenticationError, match="HTML"):
                await client._request("GET", "/test")

    @pytest.mark.asyncio
    async def test_unexpected_content_type(self):
        handler = Recorder(
            200, content=b"plain", headers={"Content-Type": "text/plain"}
        )
        async with make_client(handler) as client:
            with pytest.raises(VaultInvalidResponseError, match="text/plain"):
                await client._request("GET", "/test")

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        handler = Recorder(
            200, content=b"{broken", headers={"Content-Type": "application/json"}
        )
        async with make_client(handler) as client:
            with pytest.raises(VaultInvalidResponseError, match="Invalid JSON"):
                await client._request("GET", "/test")

    @pytest.mark.parametrize(
        "status,error_class",
        [
            (401, VaultAuthenticationError),
            (403, VaultPermissionError),
            (404, VaultNotFoundError),
            (409, VaultConflictError),
            (400, VaultValidationError),
            (422, VaultValidationError),
            (418, VaultSyncError),
        ],
    )
    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, status, error_class):
        handler = Recorder(status, json_body={"message": "nope"})
        async with make_client(handler) as client:
            with pytest.raises(error_class) as exc_info:
                await client._request("GET", "/test")
        assert len(handler.requests) == 1
        assert exc_info.value.context["status"] == status

    @pytest.mark.asyncio
    async def test_error_detail_from_json_body(self):
        handler = Recorder(404, json_body={"error": {"message": "No such file"}})
        async with make_client(handler) as client:
            with pytest.raises(VaultNotFoundError, match="No such file"):
                await client._request("GET", "/test")

    @pytest.mark.asyncio
    async def test_server_error_is_retried_then_raised_as_network_error(self):
        handler = Recorder(503, json_body={"message": "maintenance"})
        async with make_client(handler, max_retries=2) as client:
            with pytest.raises(VaultNetworkError, match="503: maintenance") as exc_info:
                await client._request("GET", "/test")
        assert len(handler.requests) == 3
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_server_error_then_success(self):
        responses = [httpx.Response(500), httpx.Response(200, json={"ok": True})]

        def handler(request):
            return responses.pop(0)

        async with make_client(handler) as client:
            assert await client._request("GET", "/test") == {"ok": True}

    @pytest.mark.asyncio
    async def test_rate_limit_honours_retry_after(self):
        responses = [
            httpx.Response(429, headers={"Retry-After": "0"}),
            httpx.Response(200, json={"ok": True}),
        ]

        def handler(request):
            return responses.pop(0)

        async with make_client(handler) as client:
            with patch("vaultsync.api.asyncio.sleep") as mock_sleep:
                assert await client._request("GET", "/test") == {"ok": True}
        mock_sleep.assert_awaited_once_with(0.0)

    @pytest.mark.asyncio
    async def test_rate_limit_exhausted(self):
        handler = Recorder(429)
        async with make_client(handler, max_retries=1) as client:
            with pytest.raises(VaultRateLimitError):
                await client._request("GET", "/test")
        assert len(handler.requests) == 2

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler, max_retries=2) as client:
            with pytest.raises(VaultNetworkError, match="Network error"):
                await client._request("GET", "/test")
        assert len(calls) == 3


class TestFileEndpoints:
    """Tests for the vault file endpoints."""

    @pytest.mark.parametrize(
        "body",
        [
            [{"path": "a.md"}],
            {"files": [{"path": "a.md"}]},
            {"data": [{"path": "a.md"}]},
        ],
    )
    @pytest.mark.asyncio
    async def test_list_files_shapes(self, body):
        handler = Recorder(json_body=body)
        async with make_client(handler) as client:
            files = await client.list_files("v1")
        assert files == [{"path": "a.md"}]
        request = handler.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/v1/vaults/v1/files"

    @pytest.mark.asyncio
    async def test_list_files_without_list(self):
        async with make_client(Recorder(json_body={"files": "nope"})) as client:
            with pytest.raises(VaultInvalidResponseError):
                await client.list_files("v1")

    @pytest.mark.asyncio
    async def test_get_changed_files_sends_since(self):
        handler = Recorder(json_body={"files": []})
        since = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        async with make_client(handler) as client:
            assert await client.get_changed_files("v1", since) == []
        request = handler.requests[0]
        assert request.url.path == "/v1/vaults/v1/files/changes"
        assert request.url.params["since"] == "2024-01-02T03:04:05.000Z"

    @pytest.mark.asyncio
    async def test_get_file_by_path_quotes_path(self):
        handler = Recorder(json_body={"content": "hi"})
        async with make_client(handler) as client:
            await client.get_file_by_path("v1", "notes/my file.md")
        assert handler.requests[0].url.raw_path == (
            b"/v1/vaults/v1/files/path/notes%2Fmy%20file.md"
        )

    @pytest.mark.asyncio
    async def test_get_file_hash(self):
        handler = Recorder(json_body={"hash": "abc"})
        async with make_client(handler) as client:
            assert await client.get_file_hash("v1", "a.md") == "abc"
        assert handler.requests[0].url.path.endswith("/files/path/a.md/hash")

    @pytest.mark.parametrize("status,expected", [(200, True), (404, False)])
    @pytest.mark.asyncio
    async def test_file_exists(self, status, expected):
        handler = Recorder(status)
        async with make_client(handler) as client:
            assert await client.file_exists("v1", "a.md") is expected
        assert handler.requests[0].method == "HEAD"

    @pytest.mark.asyncio
    async def test_file_exists_unauthorized(self):
        async with make_client(Recorder(401)) as client:
            with pytest.raises(VaultAuthenticationError):
                await client.file_exists("v1", "a.md")

    @pytest.mark.asyncio
    async def test_create_file(self):
        handler = Recorder(201, json_body={"file_id": "f1"})
        async with make_client(handler) as client:
            result = await client.create_file("v1", "a.md", "hello")
        assert result == {"file_id": "f1"}
        request = handler.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content) == {"path": "a.md", "content": "hello"}

    @pytest.mark.asyncio
    async def test_update_file_with_hash(self):
        handler = Recorder(json_body={"file_id": "f1"})
        async with make_client(handler) as client:
            await client.update_file("v1", "f1", "new", hash="h")
            await client.update_file("v1", "f1", "newer")
        first, second = handler.requests
        assert first.method == "PUT"
        assert first.url.path == "/v1/vaults/v1/files/f1"
        assert json.loads(first.content) == {"content": "new", "hash": "h"}
        assert json.loads(second.content) == {"content": "newer"}

    @pytest.mark.asyncio
    async def test_delete_file(self):
        handler = Recorder(204)
        async with make_client(handler) as client:
            assert await client.delete_file("v1", "f1") is None
        assert handler.requests[0].method == "DELETE"
        assert handler.requests[0].url.path == "/v1/vaults/v1/files/f1"

    @pytest.mark.asyncio
    async def test_apply_delta(self):
        handler = Recorder(json_body={"hash": "h2"})
        delta = {"ops": [], "target_hash": "h2"}
        async with make_client(handler) as client:
            assert await client.apply_delta("v1", "a.md", delta) == {"hash": "h2"}
        request = handler.requests[0]
        assert request.url.path == "/v1/vaults/v1/files/path/a.md/delta"
        assert json.loads(request.content) == delta

    @pytest.mark.asyncio
    async def test_upload_chunk_is_multipart(self):
        handler = Recorder(json_body={"isComplete": False})
        async with make_client(handler) as client:
            await client.upload_chunk("v1", "notes/big.md", b"part", 0, 3)
        request = handler.requests[0]
        assert request.url.path == "/v1/vaults/v1/files/upload/chunk"
        assert request.headers["Content-Type"].startswith("multipart/form-data")
        body = request.read()
        assert b'name="chunkIndex"' in body
        assert b'name="totalChunks"' in body
        assert b'filename="big.md"' in body
        assert b"notes/big.md" in body


class TestHealthCheck:
    """Tests for health_check."""

    @pytest.mark.asyncio
    async def test_healthy(self):
        handler = Recorder(200, json_body={"status": "ok"})
        async with make_client(handler) as client:
            assert await client.health_check() is True
        assert str(handler.requests[0].url) == f"{API_URL}/health"

    @pytest.mark.asyncio
    async def test_unhealthy(self):
        async with make_client(Recorder(503)) as client:
            assert await client.health_check() is False

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        async with make_client(handler) as client:
            assert await client.health_check() is False
