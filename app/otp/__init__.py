# Email one-time code module
from typing import Optional

from app.email import get_email_service
from app.otp.email_code import (
    AccessCodeService,
    CodeRequestResult,
    VerifiedAccess,
    EMAIL_NOT_RECOGNIZED,
)
from app.supabase_client import get_supabase_client

_access_code_service: Optional[AccessCodeService] = None


def get_access_code_service() -> AccessCodeService:
    """Get the access code service singleton."""
    global _access_code_service
    if _access_code_service is None:
        _access_code_service = AccessCodeService(get_supabase_client(), get_email_service())
    return _access_code_service


__all__ = [
    "AccessCodeService",
    "CodeRequestResult",
    "VerifiedAccess",
    "EMAIL_NOT_RECOGNIZED",
    "get_access_code_service",
]
