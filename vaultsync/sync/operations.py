"""Large-file transfer: chunked uploads and line deltas."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Callable, Optional

from ..exceptions import VaultDeltaIntegrityError
from ..utils import DEFAULT_CHUNK_SIZE, DEFAULT_DELTA_THRESHOLD, sha256_hex
from .delta import compute_delta, delta_stats, encode_delta, should_use_delta, verify_delta

if TYPE_CHECKING:
    from ..api import VaultSyncClient

logger = logging.getLogger(__name__)

# Large files whose last synced content is kept for delta uploads
DEFAULT_MAX_DELTA_BASES = 16


class TransferOperations:
    """Uploads large files for the sync engine.

    When the last synchronized content of a file is still cached and the
    file is large enough, only a line delta is sent. Any delta failure falls
    back to a chunked upload of the full content.
    """

    def __init__(
        self,
        client: VaultSyncClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        delta_threshold: int = DEFAULT_DELTA_THRESHOLD,
        max_delta_bases: int = DEFAULT_MAX_DELTA_BASES,
    ):
        """Initialize transfer operations.

        Args:
            client: Remote API client
            chunk_size: Bytes per uploaded chunk
            delta_threshold: Minimum size for delta uploads
            max_delta_bases: Number of cached base revisions
        """
        self.client = client
        self.chunk_size = chunk_size
        self.delta_threshold = delta_threshold
        self.max_delta_bases = max_delta_bases
        self._bases: OrderedDict[str, str] = OrderedDict()

    def remember_base(self, path: str, content: str) -> None:
        """Cache the synchronized content of a large file."""
        if not should_use_delta(len(content.encode("utf-8")), self.delta_threshold):
            self._bases.pop(path, None)
            return
        self._bases[path] = content
        self._bases.move_to_end(path)
        while len(self._bases) > self.max_delta_bases:
            self._bases.popitem(last=False)

    def forget_base(self, path: str) -> None:
        self._bases.pop(path, None)

    def get_base(self, path: str, expected_hash: Optional[str]) -> Optional[str]:
        """Cached base content, only if it matches ``expected_hash``."""
        base = self._bases.get(path)
        if base is None or expected_hash is None or sha256_hex(base) != expected_hash:
            return None
        return base

    async def upload(
        self,
        vault_id: str,
        path: str,
        content: str,
        base_hash: Optional[str] = None,
        exists: bool = True,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> dict[str, Any]:
        """Upload a large file.

        Args:
            vault_id: Vault identifier
            path: Vault-relative path
            content: Full new content
            base_hash: Stored hash of the remote revision, enables delta upload
            exists: Whether the file exists remotely
            progress_callback: Optional function(chunks_uploaded, total_chunks)

        Returns:
            Server file info of the uploaded revision
        """
        base = self.get_base(path, base_hash) if exists else None
        if base is not None:
            try:
                result = await self._upload_delta(vault_id, path, base, content)
                self.remember_base(path, content)
                return result
            except VaultDeltaIntegrityError as e:
                logger.warning(f"Delta upload of {path} failed ({e}), sending full content")

        result = await self._upload_chunked(
            vault_id, path, content, overwrite=exists, progress_callback=progress_callback
        )
        self.remember_base(path, content)
        return result

    async def _upload_delta(
        self, vault_id: str, path: str, base: str, content: str
    ) -> dict[str, Any]:
        delta = compute_delta(base, content)
        # Never send a delta that does not reproduce the content locally
        verify_delta(base, delta)
        stats = delta_stats(delta, len(content))
        logger.debug(
            f"Delta for {path}: {stats['operations']} ops, "
            f"{stats['size']} bytes (ratio {stats['compression_ratio'] or 0.0:.3f})"
        )
        response = await self.client.apply_delta(vault_id, path, encode_delta(delta))
        remote_hash = response.get("hash") if isinstance(response, dict) else None
        if remote_hash and remote_hash != delta.target_hash:
            raise VaultDeltaIntegrityError(
                f"Server produced hash {remote_hash[:8]} instead of "
                f"{delta.target_hash[:8]} for {path}",
                context={"path": path},
            )
        return response

    async def _upload_chunked(
        self,
        vault_id: str,
        path: str,
        content: str,
        overwrite: bool,
        progress_callback: Optional[Callable[[int, int], None]] = None,
    ) -> dict[str, Any]:
        data = content.encode("utf-8")
        chunks = [
            data[i : i + self.chunk_size] for i in range(0, len(data), self.chunk_size)
        ] or [b""]
        total = len(chunks)
        logger.debug(f"Chunked upload of {path}: {len(data)} bytes in {total} chunks")

        response: dict[str, Any] = {}
        for index, chunk in enumerate(chunks):
            response = await self.client.upload_chunk(
                vault_id, path, chunk, index, total, overwrite=overwrite
            )
            if progress_callback:
                progress_callback(index + 1, total)
        file_info = response.get("file") if isinstance(response, dict) else None
        return file_info or response
