"""Files pasted into a tab from the dashboard clipboard."""

from __future__ import annotations

import asyncio
import base64
import binascii
import time
from pathlib import Path, PurePosixPath

from ..logging_config import get_logger

logger = get_logger(__name__)

MIME_EXTENSIONS = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/svg+xml": ".svg",
    "image/bmp": ".bmp",
    "application/pdf": ".pdf",
    "text/plain": ".txt",
}


def extension_for(filename: str, mime_type: str) -> str:
    """Extension from the original filename, else from the MIME type, else .bin."""
    suffix = PurePosixPath(filename or "").suffix
    if suffix and len(suffix) <= 10 and suffix[1:].isalnum():
        return suffix.lower()
    return MIME_EXTENSIONS.get(mime_type, ".bin")


def inline_image_escape(data_b64: str) -> str:
    """iTerm2 inline-image sequence; the dashboard terminal renders it as a preview."""
    return f"\x1b]1337;File=inline=1:{data_b64}\x07"


class UploadHandler:
    def __init__(self, upload_dir: Path):
        self.upload_dir = upload_dir

    def _write(self, payload: bytes, ext: str) -> Path:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        path = self.upload_dir / f"clipboard-{int(time.time() * 1000)}{ext}"
        path.write_bytes(payload)
        return path

    async def save(self, filename: str, data_b64: str, mime_type: str) -> Path:
        """Decode and store an upload under a generated name. Returns the path."""
        try:
            payload = base64.b64decode(data_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 payload: {e}") from e
        path = await asyncio.to_thread(self._write, payload, extension_for(filename, mime_type))
        logger.info(f"Saved upload {path} ({len(payload)} bytes)")
        return path
