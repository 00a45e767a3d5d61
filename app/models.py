from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
import base64
import logging

logger = logging.getLogger(__name__)

# Snapshot keys the service knows how to read or patch; everything else in
# proposal_data is opaque.
PROVIDER_SIGNATURE_FIELD = "signature"
COUNTERPARTY_SIGNATURE_FIELD = "clientSignature"
COUNTERPARTY_SIGNATURE_PATH_FIELD = "clientSignaturePath"
LOGO_FIELD = "logo"
SNAPSHOT_EMAIL_FIELD = "clientEmail"

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


class BaseRequest(BaseModel):
    """Base class for all request models - ignores extra fields."""
    model_config = ConfigDict(extra="ignore")


# Enums
class DocumentStatus(str, Enum):
    SENT = "sent"
    SIGNED = "signed"


class AccessConsumedReason(str, Enum):
    VERIFIED = "verified"
    SUPERSEDED = "superseded"
    EXPIRED = "expired"
    LOCKED = "locked"


def parse_document_status(status: Any) -> DocumentStatus:
    """Parse document status with fallback for unknown values."""
    try:
        return DocumentStatus(status)
    except ValueError:
        logger.warning(f"Unknown document status: {status}, treating as SENT")
        return DocumentStatus.SENT


# Records
class Document(BaseModel):
    """
    A proposal row.

    ``content`` is the immutable-by-convention snapshot (``proposal_data``);
    status, counterparty signature reference and signed_at wrap it and move
    together exactly once.
    """
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    content: Dict[str, Any] = Field(default_factory=dict, alias="proposal_data")
    counterparty_email: Optional[str] = Field(None, alias="client_email")
    status: DocumentStatus = DocumentStatus.SENT
    counterparty_signature_ref: Optional[str] = Field(None, alias="customer_signature_url")
    signed_at: Optional[datetime] = None
    client_name: Optional[str] = None
    proposal_number: Optional[str] = None
    serial_number: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("content", mode="before")
    @classmethod
    def _content_dict(cls, v: Any) -> Dict[str, Any]:
        return v if isinstance(v, dict) else {}

    @field_validator("status", mode="before")
    @classmethod
    def _lenient_status(cls, v: Any) -> DocumentStatus:
        return parse_document_status(v)

    @field_validator("proposal_number", mode="before")
    @classmethod
    def _proposal_number_str(cls, v: Any) -> Optional[str]:
        return str(v) if v is not None else None

    @property
    def authorized_email(self) -> Optional[str]:
        """The column is authoritative; the snapshot is a fallback for old rows."""
        return self.counterparty_email or self.content.get(SNAPSHOT_EMAIL_FIELD)

    @property
    def is_signed(self) -> bool:
        return self.status == DocumentStatus.SIGNED

    def signature_state_consistent(self) -> bool:
        """status == signed <=> signature ref set <=> signed_at set."""
        flags = {
            self.status == DocumentStatus.SIGNED,
            self.counterparty_signature_ref is not None,
            self.signed_at is not None,
        }
        return len(flags) == 1


class AccessSession(BaseModel):
    """One code issuance for a (document, email) pair."""
    model_config = ConfigDict(extra="ignore")

    id: str
    document_id: str
    email: str
    code_hash: str
    issued_at: datetime
    expires_at: datetime
    verify_attempts: int = 0
    consumed_at: Optional[datetime] = None
    consumed_reason: Optional[AccessConsumedReason] = None
    grant_hash: Optional[str] = None
    grant_expires_at: Optional[datetime] = None

    @field_validator("verify_attempts", mode="before")
    @classmethod
    def _attempts_default(cls, v: Any) -> int:
        return v or 0


# Request Models
class RequestCodeRequest(BaseRequest):
    email: str = Field(..., min_length=3, max_length=254)

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v


class VerifyCodeRequest(BaseRequest):
    email: str = Field(..., min_length=3, max_length=254)
    code: str = Field(..., min_length=4, max_length=10)

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        v = v.strip()
        if not v.isdigit():
            raise ValueError("Access code must contain only digits")
        return v


class SubmitSignatureRequest(BaseRequest):
    signature_png_base64: str = Field(..., min_length=20)

    @field_validator("signature_png_base64")
    @classmethod
    def validate_signature(cls, v: str) -> str:
        try:
            if v.startswith("data:image/png;base64,"):
                v = v[len("data:image/png;base64,"):]
            decoded = base64.b64decode(v, validate=True)
        except Exception as e:
            raise ValueError(f"Invalid base64 PNG image: {e}")
        if decoded[:8] != PNG_MAGIC:
            raise ValueError("Invalid PNG signature")
        return v

    def image_bytes(self) -> bytes:
        return base64.b64decode(self.signature_png_base64)


# Response Models
class DocumentView(BaseModel):
    """Document content ready for display, asset references already signed."""
    id: str
    status: DocumentStatus
    signed: bool
    signed_at: Optional[datetime] = None
    content: Dict[str, Any]
    provider_signature_url: Optional[str] = None
    counterparty_signature_url: Optional[str] = None
    logo_url: Optional[str] = None


class RequestCodeResponse(BaseModel):
    success: bool
    message: str
    expires_in_seconds: Optional[int] = None
    delivery_status: Optional[str] = None
    debug_code: Optional[str] = None


class VerifyCodeResponse(BaseModel):
    verified: bool
    access_token: str
    access_expires_in_seconds: int
    document: DocumentView


class DocumentViewResponse(BaseModel):
    document: DocumentView


class SignatureResponse(BaseModel):
    success: bool
    signed_at: datetime
    signature_url: Optional[str] = None
    document: DocumentView
    message: str = "Document signed successfully"
