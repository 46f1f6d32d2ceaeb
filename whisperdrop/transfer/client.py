"""
Async client for the shared upload endpoint.

The endpoint stores a whole file per request. A :class:`TransferPlan` slices
the read from disk into chunks so progress can be reported per chunk.
"""

import asyncio
import logging
import os
from typing import Callable, Literal

import httpx

from whisperdrop.config import UPLOAD_BASE_URL, UPLOAD_TIMEOUT
from whisperdrop.errors import InvalidInput, UploadError
from whisperdrop.transfer.models import TransferPlan, UploadResult
from whisperdrop.transfer.planner import iter_chunks, plan

logger = logging.getLogger(__name__)

UploadMode = Literal["normal", "secure"]
# fn(chunks_done, bytes_read, plan)
ProgressCallback = Callable[[int, int, TransferPlan], None]


class UploadClient:
    """Talks to ``/api/upload`` and ``/api/uploads`` on the file server."""

    def __init__(
        self,
        base_url: str = UPLOAD_BASE_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url, timeout=UPLOAD_TIMEOUT
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "UploadClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def file_url(self, filename: str, mode: UploadMode = "normal") -> str:
        prefix = "secure/" if mode == "secure" else ""
        return f"{self._base_url}/api/uploads/{prefix}{filename}"

    async def upload(
        self,
        file_path: str,
        mode: UploadMode = "normal",
        on_progress: ProgressCallback | None = None,
    ) -> UploadResult:
        """
        Upload a file from disk.

        The endpoint takes the whole file as one multipart request. The
        file's plan decides how it is read beforehand: one chunk at a time
        in a worker thread, with ``on_progress(chunks_done, bytes_read, plan)``
        called after each chunk.
        """
        _check_mode(mode)
        transfer_plan = plan(os.path.getsize(file_path))
        logger.info(
            f"Uploading {os.path.basename(file_path)} "
            f"({transfer_plan.chunk_count} chunks of {transfer_plan.chunk_size_bytes} bytes, "
            f"eta {transfer_plan.eta_display})"
        )
        content = await _read_file(file_path, transfer_plan, on_progress)
        files = {"file": (os.path.basename(file_path), content)}
        try:
            response = await self._client.post(
                "/api/upload", files=files, data={"mode": mode}
            )
        except httpx.HTTPError as e:
            raise UploadError(f"upload request failed: {e}")
        return self._parse(response, "Upload failed")

    async def delete(self, filename: str, mode: UploadMode = "normal") -> UploadResult:
        _check_mode(mode)
        try:
            response = await self._client.delete(
                f"/api/upload/{filename}", params={"mode": mode}
            )
        except httpx.HTTPError as e:
            raise UploadError(f"delete request failed: {e}")
        return self._parse(response, "Delete failed")

    @staticmethod
    def _parse(response: httpx.Response, default_error: str) -> UploadResult:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.is_error or not body.get("success", False):
            message = body.get("error") or default_error
            logger.warning(f"Upload endpoint returned {response.status_code}: {message}")
            raise UploadError(message, data={"status_code": response.status_code})
        return UploadResult(**body)


def _check_mode(mode: str) -> None:
    if mode not in ("normal", "secure"):
        raise InvalidInput(f"unknown upload mode {mode!r}")


async def _read_file(
    file_path: str,
    transfer_plan: TransferPlan,
    on_progress: ProgressCallback | None = None,
) -> bytes:
    parts = []
    bytes_read = 0
    with open(file_path, "rb") as f:
        for index, offset, length in iter_chunks(transfer_plan):
            # Disk reads stay off the event loop
            chunk = await asyncio.to_thread(f.read, length)
            if len(chunk) != length:
                raise UploadError(
                    f"{os.path.basename(file_path)} changed while reading "
                    f"(chunk {index} at offset {offset})"
                )
            parts.append(chunk)
            bytes_read += length
            if on_progress is not None:
                on_progress(index + 1, bytes_read, transfer_plan)
    return b"".join(parts)
