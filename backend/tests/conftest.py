"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  session-scoped  : rsa keys, test_jwks
  function-scoped : db_engine, session_factory, store, fake storage and
                    publishers, request contexts, app + async_client

Environment strategy:
  - Every test gets its own SQLite database file (aiosqlite) under tmp_path,
    created from the ORM metadata. No PostgreSQL needed.
  - S3 and every queue publisher are MagicMock(spec=...) with AsyncMock
    methods; nothing touches AWS or a broker.
  - JWT tokens are built with a test RSA key — no live auth provider needed.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only
  pytest -m integration           # HTTP-level tests through the ASGI app
"""

from __future__ import annotations

import base64
import os
import time
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch settings BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("DATABASE_URL",          "sqlite+aiosqlite:///./admissions_test.db")
os.environ.setdefault("AWS_REGION",            "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID",     "test")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "test")
os.environ.setdefault("S3_BUCKET",             "test-bucket")
os.environ.setdefault("CELERY_BROKER_URL",     "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("APP_ENV",               "development")
os.environ.setdefault("DEBUG",                 "true")
os.environ.setdefault("TELEGRAM_BOT_TOKEN",    "123456:test-token")

os.environ.setdefault("AUTH_ISSUER",    "https://test.auth.example.com/")
os.environ.setdefault("AUTH_AUDIENCE",  "test-api-audience")
os.environ.setdefault("AUTH_NAMESPACE", "https://admissions.example.com")


TEST_KID      = "test-key-id-2024"
TEST_ISSUER   = "https://test.auth.example.com/"
TEST_AUDIENCE = "test-api-audience"

APPLICANT_ID = "parent-0001"
OTHER_ID     = "parent-0002"


# ─────────────────────────────────────────────────────────────────────────────
# RSA key pair for signing test JWTs (generated once per session)
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session")
def rsa_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def rsa_private_key_pem(rsa_private_key) -> bytes:
    """PEM-encoded private key bytes (used by jose.jwt.encode)."""
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def test_jwks(rsa_private_key) -> dict:
    """What the issuer's /.well-known/jwks.json would return."""
    numbers = rsa_private_key.public_key().public_numbers()

    def _b64url(n: int) -> str:
        byte_length = (n.bit_length() + 7) // 8
        return base64.urlsafe_b64encode(n.to_bytes(byte_length, "big")).rstrip(b"=").decode()

    return {
        "keys": [
            {
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "kid": TEST_KID,
                "n":   _b64url(numbers.n),
                "e":   _b64url(numbers.e),
            }
        ]
    }


@pytest.fixture
def make_token(rsa_private_key_pem):
    """
    Factory fixture: returns a function that builds signed test JWTs.

        token = make_token(role="verifier")
        token = make_token(expired=True)
    """
    from jose import jwt as jose_jwt

    def _build(
        role:     str | None = "applicant",
        user_id:  str = APPLICANT_ID,
        expired:  bool = False,
        chat_id:  str | None = None,
        audience: str = TEST_AUDIENCE,
        issuer:   str = TEST_ISSUER,
    ) -> str:
        now = int(time.time())
        claims: dict = {
            "sub":   user_id,
            "email": "parent@example.com",
            "iss":   issuer,
            "aud":   audience,
            "exp":   now - 60 if expired else now + 3600,
            "iat":   now,
        }
        if role is not None:
            claims["custom:role"] = role
        if chat_id is not None:
            claims["custom:telegram_chat_id"] = chat_id

        return jose_jwt.encode(
            claims,
            rsa_private_key_pem,
            algorithm="RS256",
            headers={"kid": TEST_KID},
        )

    return _build


# ─────────────────────────────────────────────────────────────────────────────
# Request contexts
# ─────────────────────────────────────────────────────────────────────────────

def _ctx(user_id: str, role: str, email: str = "", chat_id: str | None = None):
    from admissions.auth.token import RequestContext
    return RequestContext(
        user_id=user_id,
        email=email,
        role=role,
        telegram_chat_id=chat_id,
        exp=int(time.time()) + 3600,
        iss=TEST_ISSUER,
    )


@pytest.fixture
def applicant_ctx():
    return _ctx(APPLICANT_ID, "applicant", email="parent@example.com", chat_id="987654321")


@pytest.fixture
def other_applicant_ctx():
    return _ctx(OTHER_ID, "applicant", email="other@example.com")


@pytest.fixture
def staff_ctx():
    return _ctx("staff-01", "staff", email="staff@thcsleloi.edu.vn")


@pytest.fixture
def verifier_ctx():
    return _ctx("verifier-01", "verifier", email="verifier@thcsleloi.edu.vn")


@pytest.fixture
def admin_ctx():
    return _ctx("admin-01", "admin", email="admin@thcsleloi.edu.vn")


# ─────────────────────────────────────────────────────────────────────────────
# Database: one SQLite file per test
# ─────────────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    from admissions.db.session import build_engine, create_all

    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    from admissions.db.session import build_session_factory
    return build_session_factory(db_engine)


# ─────────────────────────────────────────────────────────────────────────────
# Mocked collaborators
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def mock_events():
    """Mocked EventPublisher — records outcome events."""
    from admissions.services.publishers import EventPublisher
    events = MagicMock(spec=EventPublisher)
    events.publish_job_outcome = AsyncMock(return_value=None)
    return events


@pytest.fixture
def mock_publisher():
    """Mocked TaskPublisher — records extraction task publishes."""
    from admissions.services.publishers import TaskPublisher
    publisher = MagicMock(spec=TaskPublisher)
    publisher.publish_process_job = AsyncMock(return_value=None)
    return publisher


@pytest.fixture
def mock_storage():
    """
    Fully mocked S3StorageService.
    All methods are AsyncMock — no real AWS calls made.
    """
    from admissions.storage.s3 import S3Object, S3StorageService

    storage = MagicMock(spec=S3StorageService)

    async def _put_object(key, body, content_type="application/octet-stream", metadata=None):
        return S3Object(
            key=key,
            bucket="test-bucket",
            size_bytes=len(body),
            content_type=content_type,
            etag="d41d8cd98f00b204e9800998ecf8427e",
        )

    storage.put_object  = AsyncMock(side_effect=_put_object)
    storage.get_object  = AsyncMock(return_value=b"%PDF-1.4\n%test\n")
    storage.head_object = AsyncMock(return_value={"ContentLength": 1024})
    return storage


@pytest.fixture
def store(session_factory, mock_events):
    from admissions.services.job_store import JobStore
    return JobStore(session_factory, mock_events)


@pytest.fixture
def make_job(store):
    """Persist a pending job directly through the store."""
    from admissions.schemas.enums import DocumentType

    async def _make(
        *,
        application_id: str = "APP-2024-001",
        user_id:        str = APPLICANT_ID,
        document_type:  DocumentType = DocumentType.TRANSCRIPT,
        file_id:        str = "applications/APP-2024-001/hocba.pdf",
        notify_email:   str | None = "parent@example.com",
        notify_chat_id: str | None = "987654321",
    ):
        return await store.create_job(
            application_id=application_id,
            user_id=user_id,
            document_type=document_type,
            file_id=file_id,
            file_name=file_id.rsplit("/", 1)[-1],
            notify_email=notify_email,
            notify_chat_id=notify_chat_id,
        )

    return _make


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_pdf_bytes() -> bytes:
    """Minimal PDF — passes the magic-byte check (%PDF header)."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj\n<< /Type /Catalog /Pages 2 0 R >>\nendobj\n"
        b"trailer\n<< /Size 2 /Root 1 0 R >>\n%%EOF"
    )


@pytest.fixture
def sample_png_bytes() -> bytes:
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app with dependency overrides
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def app_with_overrides(session_factory, mock_storage, mock_publisher, mock_events, applicant_ctx):
    """
    FastAPI app with ALL external dependencies overridden:
      - get_request_context → applicant_ctx (switch with `login`)
      - get_session_factory → per-test SQLite factory
      - get_storage / publishers → mocks
    """
    from admissions.auth.dependencies import get_event_publisher, get_storage, get_task_publisher
    from admissions.auth.token import get_request_context
    from admissions.db.session import get_session_factory
    from admissions.main import app

    app.dependency_overrides[get_request_context] = lambda: applicant_ctx
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_storage]         = lambda: mock_storage
    app.dependency_overrides[get_task_publisher]  = lambda: mock_publisher
    app.dependency_overrides[get_event_publisher] = lambda: mock_events

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
def login(app_with_overrides):
    """Switch the caller for subsequent requests: login(verifier_ctx)."""
    from admissions.auth.token import get_request_context

    def _login(ctx):
        app_with_overrides.dependency_overrides[get_request_context] = lambda: ctx

    return _login


@pytest_asyncio.fixture
async def async_client(app_with_overrides) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app_with_overrides)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
