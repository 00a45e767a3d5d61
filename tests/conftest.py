"""
Pytest configuration and fixtures.
"""
import io
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from unittest.mock import MagicMock

import pytest

# Settings are built at import time by app.main; never reach Secret Manager in tests
os.environ.setdefault("LOAD_GCP_SECRETS", "false")
os.environ.setdefault("ACCESS_CODE_SALT", "test-salt")
os.environ.setdefault("ENVIRONMENT", "test")

# Add app to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from PIL import Image, ImageDraw

from app.config import Settings
from app.email import EmailDeliveryStatus, EmailResult
from app.gcs import SignedUrlIssuer
from app.models import AccessConsumedReason, AccessSession, Document, DocumentStatus
from app.otp import AccessCodeService
from app.services.countersign import CountersignatureRecorder
from app.services.presenter import DocumentPresenter
from app.utils.rate_limiter import RateLimiter


def make_settings(**overrides) -> Settings:
    values = {
        "LOAD_GCP_SECRETS": False,
        "SUPABASE_URL": "https://test.supabase.co",
        "SUPABASE_SERVICE_KEY": "service-key",
        "ADMIN_API_SECRET": "admin-secret",
        "GCS_BUCKET": "test-bucket",
        "ACCESS_CODE_SALT": "test-salt",
        "ENVIRONMENT": "test",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class FakeSupabase:
    """
    In-memory stand-in for SupabaseClient.

    Rows are stored with the real column names; sync and async methods match
    the client so the guarded updates behave like the PostgREST versions.
    """

    def __init__(self):
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.fail_reads = False
        self.fail_sign = False

    def add_document(self, row: Dict[str, Any]) -> None:
        self.documents[row["id"]] = dict(row)

    def expire_sessions(self, document_id: str) -> None:
        past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        for row in self.sessions.values():
            if row["document_id"] == document_id:
                row["expires_at"] = past

    def expire_grants(self, document_id: str) -> None:
        past = (datetime.now(timezone.utc) - timedelta(minutes=1)).isoformat()
        for row in self.sessions.values():
            if row["document_id"] == document_id and row.get("grant_hash"):
                row["grant_expires_at"] = past

    async def get_document(self, document_id: str) -> Optional[Document]:
        if self.fail_reads:
            raise ConnectionError("store unavailable")
        row = self.documents.get(document_id)
        return Document(**row) if row else None

    def sign_document(self, document_id, content, signature_ref, signed_at) -> Optional[Document]:
        if self.fail_sign:
            raise ConnectionError("store unavailable")
        row = self.documents.get(document_id)
        if not row or row.get("status") != DocumentStatus.SENT.value:
            return None
        row.update({
            "proposal_data": content,
            "status": DocumentStatus.SIGNED.value,
            "customer_signature_url": signature_ref,
            "signed_at": signed_at.isoformat(),
        })
        return Document(**row)

    async def create_access_session(self, document_id, email, code_hash, issued_at, expires_at) -> AccessSession:
        row = {
            "id": str(uuid.uuid4()),
            "document_id": document_id,
            "email": email,
            "code_hash": code_hash,
            "issued_at": issued_at.isoformat(),
            "expires_at": expires_at.isoformat(),
            "verify_attempts": 0,
            "consumed_at": None,
            "consumed_reason": None,
            "grant_hash": None,
            "grant_expires_at": None,
        }
        self.sessions[row["id"]] = row
        return AccessSession(**row)

    def supersede_access_sessions(self, document_id: str, email: str) -> int:
        count = 0
        for row in self.sessions.values():
            if row["document_id"] == document_id and row["email"] == email and row["consumed_at"] is None:
                row["consumed_at"] = datetime.now(timezone.utc).isoformat()
                row["consumed_reason"] = AccessConsumedReason.SUPERSEDED.value
                count += 1
        return count

    async def get_active_access_session(self, document_id: str, email: str) -> Optional[AccessSession]:
        if self.fail_reads:
            raise ConnectionError("store unavailable")
        active = [
            row for row in self.sessions.values()
            if row["document_id"] == document_id and row["email"] == email and row["consumed_at"] is None
        ]
        if not active:
            return None
        return AccessSession(**max(active, key=lambda r: r["issued_at"]))

    async def record_failed_attempt(self, session: AccessSession, lock_after: int) -> AccessSession:
        row = self.sessions[session.id]
        row["verify_attempts"] = session.verify_attempts + 1
        if row["verify_attempts"] >= lock_after:
            row["consumed_at"] = datetime.now(timezone.utc).isoformat()
            row["consumed_reason"] = AccessConsumedReason.LOCKED.value
        return AccessSession(**row)

    def consume_access_session(self, session_id, reason, grant_hash=None, grant_expires_at=None) -> bool:
        row = self.sessions.get(session_id)
        if not row or row["consumed_at"] is not None:
            return False
        row["consumed_at"] = datetime.now(timezone.utc).isoformat()
        row["consumed_reason"] = reason.value
        if grant_hash:
            row["grant_hash"] = grant_hash
            row["grant_expires_at"] = grant_expires_at.isoformat() if grant_expires_at else None
        return True

    async def get_session_by_grant(self, document_id: str, grant_hash: str) -> Optional[AccessSession]:
        for row in self.sessions.values():
            if row["document_id"] == document_id and row.get("grant_hash") == grant_hash:
                return AccessSession(**row)
        return None


class FakeGCS:
    """Private bucket kept in a dict."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.objects: Dict[str, bytes] = {}
        self.fail_upload = False
        self.fail_signing = False
        self.signed_requests: List[str] = []

    def upload_bytes(self, gcs_path: str, data: bytes, content_type: str = "image/png") -> str:
        if self.fail_upload:
            raise ConnectionError("bucket unavailable")
        if gcs_path in self.objects:
            raise FileExistsError(gcs_path)
        self.objects[gcs_path] = data
        return gcs_path

    def generate_download_signed_url(self, gcs_path: str, ttl_seconds: int) -> str:
        self.signed_requests.append(gcs_path)
        if self.fail_signing:
            raise RuntimeError("credentials unavailable")
        if gcs_path not in self.objects:
            raise FileNotFoundError(gcs_path)
        return f"https://storage.googleapis.com/test-bucket/{gcs_path}?X-Goog-Expires={ttl_seconds}"


class FakeEmailService:
    """Records access codes instead of sending them."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail = False

    def is_configured(self) -> bool:
        return True

    @property
    def last_code(self) -> Optional[str]:
        return self.sent[-1]["code"] if self.sent else None

    async def send_access_code(self, to_email: str, code: str, ttl_seconds: int) -> EmailResult:
        self.sent.append({"to": to_email, "code": code, "ttl_seconds": ttl_seconds})
        if self.fail:
            return EmailResult(success=False, error="API error 500", delivery_status=EmailDeliveryStatus.FAILED)
        return EmailResult(success=True, message_id="msg_1", delivery_status=EmailDeliveryStatus.SENT)


def _png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def blank_png() -> bytes:
    """Untouched transparent canvas."""
    return _png_bytes(Image.new("RGBA", (300, 120), (0, 0, 0, 0)))


@pytest.fixture
def white_png() -> bytes:
    """Untouched opaque white canvas."""
    return _png_bytes(Image.new("RGB", (300, 120), (255, 255, 255)))


@pytest.fixture
def signature_png() -> bytes:
    """Transparent canvas with a drawn stroke."""
    image = Image.new("RGBA", (300, 120), (0, 0, 0, 0))
    draw = ImageDraw.Draw(image)
    draw.line([(20, 90), (80, 30), (140, 85), (210, 25), (280, 80)], fill=(0, 0, 0, 255), width=3)
    return _png_bytes(image)


@pytest.fixture
def mock_settings():
    """Create mock settings."""
    settings = MagicMock()
    settings.access_code_salt = "test-salt"
    settings.resend_api_key = "test_api_key"
    settings.resend_from_email = "test@example.com"
    settings.email_brand_name = "Signet"
    settings.environment = "test"
    return settings


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def d1_row() -> Dict[str, Any]:
    """Sent document D1 shared with a@x.com."""
    return {
        "id": "D1",
        "client_email": "a@x.com",
        "status": "sent",
        "customer_signature_url": None,
        "signed_at": None,
        "client_name": "Acme Ltd",
        "proposal_number": "P-100",
        "serial_number": 7,
        "created_at": "2026-01-05T10:00:00Z",
        "proposal_data": {
            "clientName": "Acme",
            "signature": "signatures/provider/owner.png",
            "logo": "https://proj.supabase.co/storage/v1/object/public/logos/acme.png",
            "items": [{"description": "Design", "price": 1200}],
            "notes": "Net 30",
        },
    }


@pytest.fixture
def fake_supabase(d1_row) -> FakeSupabase:
    fake = FakeSupabase()
    fake.add_document(d1_row)
    return fake


@pytest.fixture
def fake_gcs(settings) -> FakeGCS:
    gcs = FakeGCS(settings)
    gcs.objects["provider/owner.png"] = b"provider-signature"
    return gcs


@pytest.fixture
def fake_email() -> FakeEmailService:
    return FakeEmailService()


@pytest.fixture
def issuer(fake_gcs, settings) -> SignedUrlIssuer:
    return SignedUrlIssuer(fake_gcs, settings)


@pytest.fixture
def presenter(issuer, settings) -> DocumentPresenter:
    return DocumentPresenter(issuer, settings)


@pytest.fixture
def access_codes(fake_supabase, fake_email, settings) -> AccessCodeService:
    return AccessCodeService(
        fake_supabase,
        fake_email,
        settings,
        request_limiter=RateLimiter(max_requests=100, window_seconds=60),
        verify_limiter=RateLimiter(max_requests=100, window_seconds=60),
    )


@pytest.fixture
def recorder(fake_supabase, fake_gcs, issuer, access_codes, presenter, settings) -> CountersignatureRecorder:
    return CountersignatureRecorder(
        supabase=fake_supabase,
        gcs=fake_gcs,
        issuer=issuer,
        access_codes=access_codes,
        presenter=presenter,
        settings=settings,
    )


@pytest.fixture
def huge_png() -> bytes:
    """8000x8000 white canvas: small on the wire, 64 megapixels decoded."""
    return _png_bytes(Image.new("1", (8000, 8000), 1))
