"""Download deployment archives to a local temporary file."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

import aiofiles
import structlog

from deploy_host.core.exceptions import DownloadError
from deploy_host.core.models import Session
from deploy_host.remote.client import ControlServerClient


logger = structlog.get_logger()

NON_ARCHIVE_CONTENT_TYPES = ("text/plain", "text/html")


async def _write_stream_to_file(stream_iter: AsyncIterator[bytes], dest_path: Path, max_size_bytes: Optional[int]) -> int:
    """Write streaming bytes to file with optional max-size enforcement.

    Returns number of bytes written.
    """
    tmp_file = dest_path.with_suffix(".downloading")
    bytes_written = 0
    try:
        async with aiofiles.open(tmp_file, "wb") as f:
            async for chunk in stream_iter:
                if not chunk:
                    continue
                bytes_written += len(chunk)
                if max_size_bytes is not None and bytes_written > max_size_bytes:
                    raise DownloadError("Deployment archive exceeds maximum allowed size")
                await f.write(chunk)
    except BaseException:
        if tmp_file.exists():
            os.remove(tmp_file)
        raise
    os.replace(tmp_file, dest_path)
    return bytes_written


async def fetch_deployment_archive(
    client: ControlServerClient,
    session: Session,
    deployment_id: int,
    dest_path: Path,
    *,
    existing_files: Optional[Dict[str, str]] = None,
    max_size_bytes: Optional[int] = None,
) -> Path:
    """Download a deployment archive to dest_path.

    When existing_files is given it is sent as a delta hint so the server can
    leave unchanged files out of the archive.

    Raises:
        DownloadError: If the server answers with text instead of an archive
        TransportError: On network failure
    """
    data = {}
    if existing_files is not None:
        data["existingFiles"] = json.dumps(existing_files, separators=(",", ":"))

    path = f"/_funcs/deployment_host/{deployment_id}/download"
    logger.info("Downloading deployment", deployment_id=deployment_id, delta=existing_files is not None)
    async with client.stream("POST", path, session, data=data) as response:
        content_type = response.headers.get("content-type", "")
        if (
            response.status_code >= 400
            or not content_type
            or content_type.startswith(NON_ARCHIVE_CONTENT_TYPES)
        ):
            body = (await response.aread()).decode("utf-8", errors="replace")
            raise DownloadError(f"Error downloading file: {body}")
        bytes_written = await _write_stream_to_file(response.aiter_bytes(), dest_path, max_size_bytes)

    logger.info("Download complete", deployment_id=deployment_id, bytes=bytes_written)
    return dest_path
