"""
DB-backed document stores for the tutor portal.

Each store wraps one collection of the ``documents`` table. Documents are
returned as plain dicts carrying their ``id`` and current ``_etag``; writes
that pass ``if_match`` only succeed when the stored etag is unchanged.
"""

from __future__ import annotations

import json
import re
import secrets
import sqlite3
import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from database import get_db
from errors import ConcurrencyConflict, ConflictError, NotFound, UpstreamFailure
from helpers import normalize_email, now_iso

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class DocumentExists(ConflictError):
    pass


def new_id(prefix: str, entropy_bytes: int = 4) -> str:
    """Generated id of the form ``<prefix>_<epoch ms>_<hex>``."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(entropy_bytes)}"


@contextmanager
def _guard() -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise UpstreamFailure("Database operation failed", details=str(e)) from e


def _path(field: str) -> str:
    if not _FIELD_RE.match(field):
        raise ValueError(f"Invalid field name: {field!r}")
    return f"$.{field}"


def _row_to_doc(row: sqlite3.Row) -> dict[str, Any]:
    doc = json.loads(row["body"])
    doc["id"] = row["id"]
    doc["_etag"] = row["etag"]
    return doc


def _body(doc_id: str, doc: dict[str, Any]) -> str:
    clean = {k: v for k, v in doc.items() if k != "_etag"}
    clean["id"] = doc_id
    return json.dumps(clean, default=str)


class DocumentStore:
    """CRUD over one collection, with optimistic concurrency on updates."""

    collection = ""

    def key(self, doc_id: Any) -> str:
        return str(doc_id)

    def get(self, doc_id: Any) -> dict[str, Any] | None:
        with _guard():
            row = get_db().execute(
                "SELECT id, body, etag FROM documents WHERE collection = ? AND id = ?",
                (self.collection, self.key(doc_id)),
            ).fetchone()
        return _row_to_doc(row) if row else None

    def require(self, doc_id: Any, message: str | None = None) -> dict[str, Any]:
        doc = self.get(doc_id)
        if doc is None:
            raise NotFound(message or f"{self.collection} record not found")
        return doc

    def create(self, doc: dict[str, Any], doc_id: Any = None) -> dict[str, Any]:
        """Insert a new document. Raises DocumentExists if the id is taken."""
        key = self.key(doc_id if doc_id is not None else doc.get("id") or uuid.uuid4().hex)
        etag = uuid.uuid4().hex
        now = now_iso()
        db = get_db()
        try:
            db.execute(
                "INSERT INTO documents (collection, id, body, etag, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (self.collection, key, _body(key, doc), etag, now, now),
            )
            db.commit()
        except sqlite3.IntegrityError as e:
            raise DocumentExists(f"{self.collection} record {key} already exists") from e
        except sqlite3.Error as e:
            raise UpstreamFailure("Database operation failed", details=str(e)) from e
        return {**doc, "id": key, "_etag": etag}

    def replace(self, doc_id: Any, doc: dict[str, Any], if_match: str | None = None) -> dict[str, Any]:
        """Overwrite a document; with ``if_match`` the stored etag must be unchanged."""
        key = self.key(doc_id)
        etag = uuid.uuid4().hex
        sql = "UPDATE documents SET body = ?, etag = ?, updated_at = ? WHERE collection = ? AND id = ?"
        params: list[Any] = [_body(key, doc), etag, now_iso(), self.collection, key]
        if if_match:
            sql += " AND etag = ?"
            params.append(if_match)
        db = get_db()
        with _guard():
            cur = db.execute(sql, params)
            db.commit()
        if cur.rowcount == 0:
            if if_match and self.get(key) is not None:
                raise ConcurrencyConflict()
            raise NotFound(f"{self.collection} record not found")
        return {**doc, "id": key, "_etag": etag}

    def upsert(self, doc: dict[str, Any], doc_id: Any = None) -> dict[str, Any]:
        key = self.key(doc_id if doc_id is not None else doc["id"])
        etag = uuid.uuid4().hex
        now = now_iso()
        db = get_db()
        with _guard():
            db.execute(
                "INSERT INTO documents (collection, id, body, etag, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(collection, id) DO UPDATE SET "
                "body = excluded.body, etag = excluded.etag, updated_at = excluded.updated_at",
                (self.collection, key, _body(key, doc), etag, now, now),
            )
            db.commit()
        return {**doc, "id": key, "_etag": etag}

    def patch(self, doc_id: Any, changes: dict[str, Any], if_match: str | None = None) -> dict[str, Any]:
        """Merge top-level fields into a document.

        The write is conditional on the etag that was read (or ``if_match``),
        so a concurrent writer surfaces as ConcurrencyConflict.
        """
        current = self.require(doc_id)
        merged = {**current, **changes}
        return self.replace(doc_id, merged, if_match=if_match or current["_etag"])

    def delete(self, doc_id: Any, if_match: str | None = None) -> bool:
        key = self.key(doc_id)
        sql = "DELETE FROM documents WHERE collection = ? AND id = ?"
        params: list[Any] = [self.collection, key]
        if if_match:
            sql += " AND etag = ?"
            params.append(if_match)
        db = get_db()
        with _guard():
            cur = db.execute(sql, params)
            db.commit()
        if cur.rowcount == 0 and if_match and self.get(key) is not None:
            raise ConcurrencyConflict()
        return cur.rowcount > 0

    def query(
        self,
        where: dict[str, Any] | None = None,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Equality filter on top-level (or dotted) JSON fields."""
        sql = "SELECT id, body, etag FROM documents WHERE collection = ?"
        params: list[Any] = [self.collection]
        for field, value in (where or {}).items():
            if value is None:
                sql += " AND json_extract(body, ?) IS NULL"
                params.append(_path(field))
            else:
                sql += " AND json_extract(body, ?) = ?"
                params.extend([_path(field), value])
        if order_by:
            sql += " ORDER BY json_extract(body, ?) " + ("DESC" if descending else "ASC")
            params.append(_path(order_by))
        else:
            sql += " ORDER BY created_at"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        with _guard():
            rows = get_db().execute(sql, params).fetchall()
        return [_row_to_doc(r) for r in rows]

    def count(self, where: dict[str, Any] | None = None) -> int:
        return len(self.query(where))


# ── Users & Tutors ───────────────────────────────────────────────────


class UserStoreDB(DocumentStore):
    """Users keyed by lower-cased email."""

    collection = "Users"

    def key(self, doc_id: Any) -> str:
        return normalize_email(doc_id)

    def pending(self) -> list[dict[str, Any]]:
        return self.query({"status": "pending"}, order_by="signupDate", descending=True)

    def all_users(self) -> list[dict[str, Any]]:
        return self.query(order_by="signupDate", descending=True)

    def by_tutor(self, tutor_email: str) -> list[dict[str, Any]]:
        return self.query({"assignedTutor": normalize_email(tutor_email)}, order_by="name")

    def by_customer_id(self, customer_id: str) -> dict[str, Any] | None:
        rows = self.query({"stripeCustomerId": customer_id}, limit=1)
        return rows[0] if rows else None


class TutorStoreDB(DocumentStore):
    collection = "Tutors"

    def key(self, doc_id: Any) -> str:
        return normalize_email(doc_id)


# ── Content ──────────────────────────────────────────────────────────


class LessonStoreDB(DocumentStore):
    collection = "Lessons"

    def listing(self, include_unpublished: bool = False) -> list[dict[str, Any]]:
        where = None if include_unpublished else {"published": True}
        return self.query(where, order_by="createdDate", descending=True)

    def search(
        self,
        *,
        content_type: str | None = None,
        year_group: str | None = None,
        subject: str | None = None,
        category: str | None = None,
        include_unpublished: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"visible": True}
        if not include_unpublished:
            where["published"] = True
        for field, value in (
            ("type", content_type),
            ("yearGroup", year_group),
            ("subject", subject),
            ("category", category),
        ):
            if value:
                where[field] = value
        return self.query(where, order_by="createdDate", descending=True, limit=limit)


# ── Invitations ──────────────────────────────────────────────────────


class InvitationStoreDB(DocumentStore):
    collection = "Invitations"

    def get_by_token(self, token: str) -> dict[str, Any] | None:
        rows = self.query({"token": token}, limit=1)
        return rows[0] if rows else None

    def for_tutor(self, tutor_email: str) -> list[dict[str, Any]]:
        return self.query(
            {"tutorEmail": normalize_email(tutor_email)}, order_by="createdDate", descending=True,
        )


# ── Progress & homework ──────────────────────────────────────────────


class ProgressStoreDB(DocumentStore):
    collection = "StudentProgress"

    def for_student(self, student_id: str, record_type: str | None = None,
                    order_by: str = "createdDate", descending: bool = True,
                    limit: int | None = None) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"studentId": normalize_email(student_id)}
        if record_type:
            where["type"] = record_type
        return self.query(where, order_by=order_by, descending=descending, limit=limit)


class HomeworkStoreDB(DocumentStore):
    collection = "Homework"

    def catalog(self) -> list[dict[str, Any]]:
        items = self.query()
        return sorted(
            items,
            key=lambda h: (str(h.get("subject") or ""), _week_key(h.get("week")), str(h.get("title") or "")),
        )


def _week_key(week: Any) -> tuple[int, str]:
    try:
        return (int(week), "")
    except (TypeError, ValueError):
        return (10**6, str(week or ""))


class HomeworkAssignmentStoreDB(DocumentStore):
    collection = "HomeworkAssignments"

    def for_student(self, student_email: str, tutor_email: str | None = None) -> list[dict[str, Any]]:
        where: dict[str, Any] = {"studentEmail": normalize_email(student_email)}
        if tutor_email:
            where["tutorEmail"] = normalize_email(tutor_email)
        return self.query(where, order_by="assignedDate", descending=True)


# ── Tracking & audit ─────────────────────────────────────────────────


class ViewEventStoreDB(DocumentStore):
    collection = "ViewTracking"


class AuditLogStoreDB(DocumentStore):
    collection = "AuditLog"
