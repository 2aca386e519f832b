"""
Test fixtures for the tutor portal API.

Provides app, client, per-role authenticated clients and helpers for seeding
user records and minting identity tokens. Storage is a file-based SQLite
database and a blob directory under tmp_path; email uses the log backend.
"""

from __future__ import annotations

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

ADMIN_EMAIL = "admin@brightstars.test"
TUTOR_EMAIL = "tutor@brightstars.test"
STUDENT_EMAIL = "student@brightstars.test"
PARENT_EMAIL = "parent@brightstars.test"


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite and a temporary blob container."""
    from app import create_app

    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "test.db"),
        "SECRET_KEY": "test-secret-key",
        "IDENTITY_TOKEN_SECRET": "test-identity-secret",
        "BLOB_STORAGE_DIR": str(tmp_path / "blobs"),
        "EMAIL_BACKEND": "log",
        "ADMIN_NOTIFY_EMAIL": "office@brightstars.test",
        "BASE_URL": "https://portal.test",
        "STRIPE_SECRET_KEY": "sk_test_fake",
        "STRIPE_WEBHOOK_SECRET": "whsec_test",
    })

    with app.app_context():
        from database import init_db, run_migrations

        init_db()
        run_migrations()
    app._db_initialized = True

    yield app


@pytest.fixture
def client(app):
    """Unauthenticated test client."""
    return app.test_client()


@pytest.fixture
def seed_user(app):
    """Insert (or overwrite) a Users record. Returns the stored document."""
    from db_stores import UserStoreDB

    def _seed(email: str, **fields):
        record = {
            "email": email,
            "name": fields.pop("name", email.split("@")[0].title()),
            "status": "approved",
            "roles": [],
            "hasSubscription": False,
            "dataProcessingConsent": True,
            **fields,
        }
        with app.app_context():
            return UserStoreDB().upsert(record, doc_id=email)

    return _seed


@pytest.fixture
def make_token(app):
    """Mint a bearer token signed with the test identity secret."""
    from auth import issue_identity_token

    def _make(email: str, **kwargs) -> str:
        with app.app_context():
            return issue_identity_token(email, **kwargs)

    return _make


def _client_for(app, make_token, email: str):
    client = app.test_client()
    client.environ_base["HTTP_AUTHORIZATION"] = f"Bearer {make_token(email)}"
    return client


@pytest.fixture
def admin_client(app, seed_user, make_token):
    seed_user(ADMIN_EMAIL, name="Office Admin", roles=["admin"], isAdmin=True)
    return _client_for(app, make_token, ADMIN_EMAIL)


@pytest.fixture
def tutor_client(app, seed_user, make_token):
    seed_user(TUTOR_EMAIL, name="Tess Tutor", roles=["tutor"])
    return _client_for(app, make_token, TUTOR_EMAIL)


@pytest.fixture
def student_client(app, seed_user, make_token):
    seed_user(STUDENT_EMAIL, name="Sam Student", roles=["student"], yearGroup="year5")
    return _client_for(app, make_token, STUDENT_EMAIL)


@pytest.fixture
def parent_client(app, seed_user, make_token):
    seed_user(PARENT_EMAIL, name="Pat Parent", roles=["parent"], children=[STUDENT_EMAIL])
    return _client_for(app, make_token, PARENT_EMAIL)
