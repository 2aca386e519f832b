"""
Blob storage for lesson files.

Blobs live on the local filesystem under ``<root>/<container>/<path>``.
Read access is granted through signed URLs that embed an optional expiry; the
signature is an itsdangerous token over (container, path, expiry).
"""

from __future__ import annotations

import logging
import time
from pathlib import Path, PurePosixPath
from urllib.parse import quote

from itsdangerous import BadSignature, URLSafeSerializer
from werkzeug.utils import secure_filename

from errors import NotFound, UpstreamFailure, ValidationError

logger = logging.getLogger(__name__)


def safe_blob_path(path: str) -> str:
    """Normalise a ``/``-separated blob path, rejecting traversal."""
    parts = []
    for part in PurePosixPath(str(path or "")).parts:
        if part in ("/", ""):
            continue
        cleaned = secure_filename(part)
        if not cleaned or part in (".", ".."):
            raise ValidationError(f"Invalid blob path: {path}")
        parts.append(cleaned)
    if not parts:
        raise ValidationError("Blob path required")
    return "/".join(parts)


class LocalBlobStore:
    """Filesystem-backed container with signed, time-limited read URLs."""

    def __init__(self, root: str, container: str, secret: str, base_url: str = ""):
        self.root = Path(root)
        self.container = container
        self.base_url = base_url.rstrip("/")
        self._signer = URLSafeSerializer(secret, salt="blob-read")

    def _file(self, blob_path: str) -> Path:
        return self.root / self.container / safe_blob_path(blob_path)

    def upload(self, blob_path: str, data: bytes, content_type: str = "") -> str:
        """Write a blob and return its normalised path."""
        path = safe_blob_path(blob_path)
        target = self.root / self.container / path
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise UpstreamFailure("Blob upload failed", details=str(e)) from e
        logger.info("Stored blob %s/%s (%d bytes, %s)", self.container, path, len(data), content_type or "-")
        return path

    def exists(self, blob_path: str) -> bool:
        return self._file(blob_path).is_file()

    def read(self, blob_path: str) -> bytes:
        target = self._file(blob_path)
        if not target.is_file():
            raise NotFound("File not found")
        return target.read_bytes()

    def url_for(self, blob_path: str) -> str:
        return f"{self.base_url}/blobs/{quote(self.container)}/{quote(safe_blob_path(blob_path))}"

    def signed_url(self, blob_path: str, ttl_seconds: int | None) -> str:
        """Read-only URL valid for ``ttl_seconds``; ``None`` never expires."""
        path = safe_blob_path(blob_path)
        expires = None if ttl_seconds is None else int(time.time()) + int(ttl_seconds)
        sig = self._signer.dumps([self.container, path, expires])
        return f"{self.url_for(path)}?sig={sig}"

    def verify(self, container: str, blob_path: str, sig: str) -> bool:
        try:
            signed_container, signed_path, expires = self._signer.loads(sig)
        except BadSignature:
            return False
        if signed_container != container or signed_path != safe_blob_path(blob_path):
            return False
        return expires is None or time.time() < expires
