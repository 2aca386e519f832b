"""
Rate limiter and the external clients injected into the app at startup.

Clients are constructed once by ``init_services`` from app config and stored
on ``app.extensions``; handlers fetch them through ``get_services()``.
"""

from __future__ import annotations

from dataclasses import dataclass

from flask import Flask, current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from blob_store import LocalBlobStore
from identity_admin import IdentityDirectory

EXTENSION_KEY = "tutor_portal"

limiter = Limiter(key_func=get_remote_address, default_limits=["200 per hour"])


@dataclass
class Services:
    blobs: LocalBlobStore
    directory: IdentityDirectory


def init_services(app: Flask, services: Services | None = None) -> Services:
    """Build (or accept pre-built) clients and attach them to the app."""
    if services is None:
        cfg = app.config
        services = Services(
            blobs=LocalBlobStore(
                root=cfg.get("BLOB_STORAGE_DIR", "blob_data"),
                container=cfg.get("BLOB_CONTAINER", "lesson-files"),
                secret=cfg["SECRET_KEY"],
                base_url=cfg.get("BLOB_BASE_URL", ""),
            ),
            directory=IdentityDirectory(
                tenant_id=cfg.get("IDENTITY_TENANT_ID", ""),
                client_id=cfg.get("IDENTITY_CLIENT_ID", ""),
                client_secret=cfg.get("IDENTITY_CLIENT_SECRET", ""),
                tenant_domain=cfg.get("IDENTITY_TENANT_DOMAIN", ""),
            ),
        )
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
