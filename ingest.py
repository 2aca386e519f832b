"""
Bulk content ingestion.

Turns uploaded files into Lessons documents:

- ``year-plan``: an .xlsx with one row per week (``Week`` and ``Topic`` are
  required; ``Objectives``/``Activities``/``Resources`` are ``;``-separated)
- ``bulk-lessons``: lesson files, classified by filename into subject and category
- ``resources``: extra resources, classified by filename and MIME type

Each file is stored and recorded independently; one bad file does not stop
the rest. Records keep only the blob path; readers get short-lived links
from ``/api/download``.
"""

from __future__ import annotations

import io
import logging
import math
import time
from dataclasses import dataclass
from typing import Any

from openpyxl import load_workbook

from blob_store import LocalBlobStore
from db_stores import LessonStoreDB, new_id
from errors import ServiceError, ValidationError
from helpers import now_iso

logger = logging.getLogger(__name__)

CONTENT_TYPES = ("year-plan", "bulk-lessons", "resources")

RESOURCE_USAGE = {
    "video": "Watch this educational video to enhance understanding of the topic.",
    "past-paper": "Use this past paper for exam practice. Time yourself and check answers afterwards.",
    "reading": "Recommended reading to broaden knowledge and improve comprehension skills.",
    "guide": "Reference guide with helpful tips and explanations for complex topics.",
    "image": "Visual aid to support learning and understanding of concepts.",
    "audio": "Listen to this audio content to reinforce learning through auditory means.",
}


@dataclass
class UploadedFile:
    name: str
    content_type: str
    data: bytes

    @classmethod
    def from_storage(cls, storage) -> "UploadedFile":
        """Read a werkzeug FileStorage fully into memory."""
        return cls(
            name=storage.filename or "upload",
            content_type=storage.mimetype or "application/octet-stream",
            data=storage.read(),
        )

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return self.name.rsplit(".", 1)[-1].lower() if "." in self.name else ""

    @property
    def title(self) -> str:
        stem = self.name.rsplit(".", 1)[0] if "." in self.name else self.name
        return stem.replace("_", " ").replace("-", " ")


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    value = round(size / (1024 ** i), 2)
    return f"{value:g} {units[i]}"


def classify_lesson_file(file_name: str) -> tuple[str, str]:
    """Return (subject, category) guessed from a lesson file name."""
    name = file_name.lower()
    if "non-verbal" in name or "spatial" in name:
        subject = "non-verbal-reasoning"
    elif any(k in name for k in ("math", "arithmetic", "number")):
        subject = "maths"
    elif any(k in name for k in ("english", "comprehension", "writing", "grammar")):
        subject = "english"
    elif "verbal" in name or "reasoning" in name:
        subject = "verbal-reasoning"
    else:
        subject = "general"

    if "worksheet" in name or "practice" in name:
        category = "worksheet"
    elif "homework" in name or "hw" in name:
        category = "homework"
    elif any(k in name for k in ("test", "exam", "assessment")):
        category = "assessment"
    elif any(k in name for k in ("answer", "solution", "marking")):
        category = "answers"
    else:
        category = "lesson"
    return subject, category


def classify_resource(file_name: str, mime: str) -> tuple[str, str]:
    """Return (resource type, category) from file name and MIME type."""
    name = file_name.lower()
    mime = (mime or "").lower()
    if "video" in name or mime.startswith("video/"):
        return "video", "media"
    if "past" in name and "paper" in name:
        return "past-paper", "assessment"
    if "reading" in name or "book" in name:
        return "reading", "literature"
    if "guide" in name or "help" in name:
        return "guide", "reference"
    if mime.startswith("image/"):
        return "image", "visual"
    if "pdf" in mime:
        return "document", "reference"
    if "audio" in mime:
        return "audio", "media"
    return "general", "resource"


def _split(value: Any) -> list[str]:
    if value is None:
        return []
    return [s.strip() for s in str(value).split(";") if s.strip()]


def _cell(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def read_year_plan_rows(content: bytes) -> list[dict[str, Any]]:
    """Rows of the first worksheet as dicts keyed by the header row."""
    if not content:
        raise ValidationError("Year plan file is empty")
    try:
        wb = load_workbook(filename=io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise ValidationError(f"Invalid Excel file: {e}") from e

    try:
        ws = wb.worksheets[0] if wb.worksheets else None
        if ws is None:
            raise ValidationError("Excel file has no worksheet")
        rows_iter = ws.iter_rows(values_only=True)
        header = next(rows_iter, None)
        if not header:
            return []
        keys = [str(h).strip() if h is not None else "" for h in header]
        rows = []
        for values in rows_iter:
            if values is None or all(v is None for v in values):
                continue
            rows.append({k: _cell(v) for k, v in zip(keys, values) if k})
        return rows
    finally:
        wb.close()


class BulkIngestor:
    """Stores uploaded files and records them as Lessons documents."""

    def __init__(self, blobs: LocalBlobStore, year_group: str, uploaded_by: str,
                 url_ttl: int | None = None):
        self.blobs = blobs
        self.url_ttl = url_ttl
        self.year_group = year_group or "general"
        self.uploaded_by = uploaded_by
        self.lessons = LessonStoreDB()

    def _store(self, prefix: str, upload: UploadedFile) -> tuple[str, str]:
        """Store the blob and return (path, signed read link)."""
        path = self.blobs.upload(
            f"{prefix}/{int(time.time() * 1000)}_{upload.name}", upload.data, upload.content_type,
        )
        return path, self.blobs.signed_url(path, self.url_ttl)

    def _stamp(self) -> dict[str, Any]:
        now = now_iso()
        return {
            "createdDate": now,
            "updatedDate": now,
            "createdBy": self.uploaded_by,
            "published": True,
            "visible": True,
        }

    def _metadata(self) -> dict[str, Any]:
        return {
            "uploadDate": now_iso(),
            "uploadedBy": self.uploaded_by,
            "processed": True,
            "approved": True,
            "downloadCount": 0,
            "viewCount": 0,
        }

    def year_plan(self, upload: UploadedFile) -> dict[str, Any]:
        if upload.extension != "xlsx":
            raise ValidationError("Year plan must be an .xlsx spreadsheet")
        path, url = self._store(f"year-plans/{self.year_group}", upload)
        rows = read_year_plan_rows(upload.data)
        stamp = int(time.time() * 1000)
        created, errors = [], 0
        for i, row in enumerate(rows):
            week, topic = row.get("Week"), row.get("Topic")
            if week in (None, "") or topic in (None, ""):
                continue
            try:
                week_no = int(week)
            except (TypeError, ValueError):
                week_no = i + 1
            subject = row.get("Subject") or "Mixed"
            lesson = {
                "title": f"Week {week}: {topic}",
                "description": row.get("Description") or f"Year plan content for {self.year_group} Week {week}",
                "yearGroup": self.year_group,
                "week": week_no,
                "subject": subject,
                "type": "year-plan",
                "category": "planning",
                "sourceFile": path,
                "content": {
                    "topic": topic,
                    "objectives": _split(row.get("Objectives")),
                    "activities": _split(row.get("Activities")),
                    "resources": _split(row.get("Resources")),
                    "homework": row.get("Homework") or "",
                    "assessment": row.get("Assessment") or "",
                    "notes": row.get("Notes") or "",
                },
                "tags": ["year-plan", self.year_group, str(subject).lower()],
                **self._stamp(),
            }
            try:
                created.append(self.lessons.create(lesson, doc_id=f"{self.year_group}-week-{week}-{stamp}-{i}"))
            except ServiceError:
                logger.exception("Year plan row %d failed", i)
                errors += 1
        return {
            "success": True,
            "type": "year-plan",
            "fileName": path,
            "fileUrl": url,
            "lessonsCreated": len(created),
            "lessonsError": errors,
            "totalRows": len(rows),
            "lessons": created,
        }

    def lesson_file(self, upload: UploadedFile) -> dict[str, Any]:
        subject, category = classify_lesson_file(upload.name)
        path, url = self._store(f"lessons/{self.year_group}/{subject}/{category}", upload)
        lesson = {
            "title": upload.title,
            "description": f"{category.capitalize()} material for {self.year_group} {subject}",
            "yearGroup": self.year_group,
            "subject": subject,
            "category": category,
            "type": "lesson-material",
            "fileName": path,
            "originalFileName": upload.name,
            "fileType": upload.content_type,
            "fileSize": upload.size,
            "fileSizeFormatted": format_file_size(upload.size),
            "fileExtension": upload.extension,
            "content": {
                "description": f"Uploaded {category} for {subject}",
                "instructions": f"This is a {category} file for {self.year_group} students studying {subject}.",
                "difficulty": "intermediate" if self.year_group == "year5" else "beginner",
                "estimatedDuration": {
                    "worksheet": "30-45 minutes", "homework": "20-30 minutes",
                }.get(category, "varies"),
            },
            "tags": [subject, category, self.year_group, upload.content_type.split("/")[-1] or "document"],
            "metadata": self._metadata(),
            **self._stamp(),
        }
        record = self.lessons.create(lesson, doc_id=new_id(f"{self.year_group}-{subject}-{category}"))
        return {
            "success": True,
            "type": "lesson-material",
            "fileName": path,
            "fileUrl": url,
            "subject": subject,
            "category": category,
            "lesson": record,
        }

    def resource_file(self, upload: UploadedFile) -> dict[str, Any]:
        resource_type, category = classify_resource(upload.name, upload.content_type)
        path, url = self._store(f"resources/{self.year_group}/{resource_type}", upload)
        resource = {
            "title": upload.title,
            "description": f"{resource_type.capitalize()} resource for {self.year_group}",
            "yearGroup": self.year_group,
            "subject": "general",
            "category": category,
            "resourceType": resource_type,
            "type": "extra-resource",
            "fileName": path,
            "originalFileName": upload.name,
            "fileType": upload.content_type,
            "fileSize": upload.size,
            "fileSizeFormatted": format_file_size(upload.size),
            "fileExtension": upload.extension,
            "content": {
                "description": f"Uploaded {resource_type} resource",
                "instructions": f"This {resource_type} resource is available for {self.year_group} students.",
                "usage": RESOURCE_USAGE.get(resource_type, "Additional resource to support and enhance learning."),
                "accessibility": "Available for download by enrolled students",
            },
            "tags": [resource_type, category, self.year_group, "extra-resource",
                     upload.content_type.split("/")[-1] or "document"],
            "metadata": {**self._metadata(), "rating": None, "featured": False},
            **self._stamp(),
        }
        record = self.lessons.create(resource, doc_id=new_id(f"{self.year_group}-resource-{resource_type}"))
        return {
            "success": True,
            "type": "extra-resource",
            "resourceType": resource_type,
            "fileName": path,
            "fileUrl": url,
            "fileType": upload.content_type,
            "fileSize": upload.size,
            "resource": record,
        }


def ingest_bulk_upload(
    blobs: LocalBlobStore,
    content_type: str,
    year_group: str,
    uploaded_by: str,
    files: list[UploadedFile],
    url_ttl: int | None = None,
) -> dict[str, Any]:
    """Run one ingestion per file and collect per-file results."""
    if content_type not in CONTENT_TYPES:
        raise ValidationError(f"Invalid content type: {content_type}")

    ingestor = BulkIngestor(blobs, year_group, uploaded_by, url_ttl)
    process = {
        "year-plan": ingestor.year_plan,
        "bulk-lessons": ingestor.lesson_file,
        "resources": ingestor.resource_file,
    }[content_type]
    result_type = {
        "year-plan": "year-plan", "bulk-lessons": "lesson-material", "resources": "extra-resource",
    }[content_type]

    results = []
    created = 0
    for upload in files:
        try:
            result = process(upload)
        except ServiceError as e:
            logger.warning("Bulk upload of %s failed: %s", upload.name, e.message)
            result = {"success": False, "type": result_type, "fileName": upload.name, "error": e.message}
        results.append(result)
        if result.get("success"):
            created += result.get("lessonsCreated", 1)

    return {
        "success": True,
        "message": f"Successfully processed {len(results)} items",
        "results": results,
        "lessonsCreated": created,
    }
