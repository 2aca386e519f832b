"""File upload, bulk ingestion, signed download and blob serving routes."""

from __future__ import annotations

import logging
import time
from typing import Any

from flask import Blueprint, Response, current_app, jsonify, request
from flask_login import current_user
from werkzeug.utils import secure_filename

from audit import log_event
from errors import AccessDenied, NotFound, ValidationError
from extensions import get_services
from helpers import admin_required, json_body, require_fields
from ingest import UploadedFile, ingest_bulk_upload
from subscription_store import requires_subscription

logger = logging.getLogger(__name__)

bp = Blueprint("upload", __name__)


def _collect_files(content_type: str) -> list[UploadedFile]:
    """Gather the multipart files a bulk upload of ``content_type`` carries."""
    files = request.files
    if content_type == "year-plan":
        storages = files.getlist("planFile") or [f for _, f in files.items(multi=True)]
    else:
        prefix = "lesson-" if content_type == "bulk-lessons" else "resource-"
        storages = [f for key, f in files.items(multi=True) if key.startswith(prefix)]
        storages.extend(files.getlist("files"))
    return [UploadedFile.from_storage(f) for f in storages if f and f.filename]


def _upload_link_ttl() -> int | None:
    """Expiry for links handed back on upload; without UPLOAD_SIGNED_URLS they do not expire."""
    if current_app.config.get("UPLOAD_SIGNED_URLS"):
        return current_app.config.get("DOWNLOAD_URL_TTL_MINUTES", 15) * 60
    return None


@bp.route("/api/upload", methods=["POST"])
@admin_required
def api_upload() -> tuple[Any, int] | Any:
    storage = request.files.get("file")
    if storage is None or not storage.filename:
        raise ValidationError("No file uploaded")
    upload = UploadedFile.from_storage(storage)

    blobs = get_services().blobs
    name = secure_filename(upload.name) or "upload"
    path = blobs.upload(f"{int(time.time() * 1000)}_{name}", upload.data, upload.content_type)

    url = blobs.signed_url(path, _upload_link_ttl())
    log_event("file_uploaded", current_user.email, f"file={path} size={upload.size}")
    return jsonify({"success": True, "url": url, "fileName": path})


@bp.route("/api/bulk-upload", methods=["POST"])
@admin_required
def api_bulk_upload() -> Any:
    content_type = request.form.get("contentType", "")
    year_group = request.form.get("yearGroup", "")
    if not content_type or not year_group:
        raise ValidationError("contentType and yearGroup are required")

    files = _collect_files(content_type)
    if not files:
        raise ValidationError("No files uploaded")

    result = ingest_bulk_upload(
        get_services().blobs, content_type, year_group, current_user.email, files, _upload_link_ttl(),
    )
    logger.info(
        "Bulk upload (%s, %s) by %s: %d file(s), %d item(s) created",
        content_type, year_group, current_user.email, len(files), result["lessonsCreated"],
    )
    return jsonify(result)


@bp.route("/api/download", methods=["POST"])
@requires_subscription
def api_download() -> Any:
    data = json_body()
    require_fields(data, "fileName", message="fileName is required")
    file_name = data["fileName"]

    blobs = get_services().blobs
    if not blobs.exists(file_name):
        raise NotFound("File not found")

    ttl_minutes = current_app.config.get("DOWNLOAD_URL_TTL_MINUTES", 15)
    url = blobs.signed_url(file_name, ttl_minutes * 60)
    log_event("file_download", current_user.email, f"file={file_name}")
    return jsonify({"success": True, "downloadUrl": url, "expiresIn": ttl_minutes})


@bp.route("/blobs/<container>/<path:blob_path>", methods=["GET"])
def serve_blob(container: str, blob_path: str) -> Response:
    """Serve a blob to the holder of a valid, unexpired signature."""
    blobs = get_services().blobs
    if container != blobs.container or not blobs.verify(container, blob_path, request.args.get("sig", "")):
        raise AccessDenied("Invalid or expired link")
    data = blobs.read(blob_path)
    return Response(
        data,
        mimetype="application/octet-stream",
        headers={"Content-Disposition": f'attachment; filename="{blob_path.rsplit("/", 1)[-1]}"'},
    )

