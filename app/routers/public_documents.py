"""
Public document API: email code access, document view, countersignature.
Paths: /v1/public/documents/{document_id}
"""
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from app.config import get_settings, Settings
from app.models import (
    DocumentViewResponse,
    RequestCodeRequest,
    RequestCodeResponse,
    SignatureResponse,
    SubmitSignatureRequest,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from app.exceptions import NotFoundError, UpstreamFailure
from app.otp import AccessCodeService, get_access_code_service
from app.services.countersign import CountersignatureRecorder, get_countersignature_recorder
from app.services.presenter import DocumentPresenter, get_document_presenter
from app.supabase_client import SupabaseClient, get_supabase_client
from app.utils.datetime_utils import seconds_until
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/v1/public/documents",
    tags=["public-documents"],
)

ACCESS_TOKEN_HEADER = "X-Access-Token"


def get_client_ip(request: Request) -> str:
    """
    Extract client IP address, handling proxies and Cloud Run.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First hop is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


@router.post("/{document_id}/access/request-code", response_model=RequestCodeResponse)
async def request_access_code(
    body: RequestCodeRequest,
    request: Request,
    document_id: str = Path(..., min_length=1, max_length=128),
    access_codes: AccessCodeService = Depends(get_access_code_service),
):
    """
    Email a one-time access code to the document's counterparty.

    An unknown document and a mismatched email get the same answer.
    """
    result = await access_codes.request_code(document_id, body.email, get_client_ip(request))

    return RequestCodeResponse(
        success=result.success,
        message=result.message,
        expires_in_seconds=seconds_until(result.expires_at) if result.expires_at else None,
        delivery_status=result.delivery_status.value if result.delivery_status else None,
        debug_code=result.code,
    )


@router.post("/{document_id}/access/verify", response_model=VerifyCodeResponse)
async def verify_access_code(
    body: VerifyCodeRequest,
    request: Request,
    document_id: str = Path(..., min_length=1, max_length=128),
    access_codes: AccessCodeService = Depends(get_access_code_service),
    presenter: DocumentPresenter = Depends(get_document_presenter),
):
    """Exchange a correct code for an access grant and the document."""
    access = await access_codes.verify_code(
        document_id, body.email, body.code, get_client_ip(request)
    )

    return VerifyCodeResponse(
        verified=True,
        access_token=access.access_token,
        access_expires_in_seconds=seconds_until(access.access_expires_at),
        document=presenter.present(access.document),
    )


@router.get("/{document_id}", response_model=DocumentViewResponse)
async def get_document(
    document_id: str = Path(..., min_length=1, max_length=128),
    access_token: Optional[str] = Header(None, alias=ACCESS_TOKEN_HEADER),
    access_codes: AccessCodeService = Depends(get_access_code_service),
    presenter: DocumentPresenter = Depends(get_document_presenter),
    supabase: SupabaseClient = Depends(get_supabase_client),
):
    """Fresh document view; asset URLs are re-signed on every call."""
    await access_codes.validate_grant(document_id, access_token)

    try:
        document = await supabase.get_document(document_id)
    except Exception as e:
        logger.error(f"Document read failed: {type(e).__name__}: {e}")
        raise UpstreamFailure()

    if document is None:
        raise NotFoundError("Document not found.")

    return DocumentViewResponse(document=presenter.present(document))


@router.post("/{document_id}/signature", response_model=SignatureResponse)
async def submit_signature(
    body: SubmitSignatureRequest,
    document_id: str = Path(..., min_length=1, max_length=128),
    access_token: Optional[str] = Header(None, alias=ACCESS_TOKEN_HEADER),
    recorder: CountersignatureRecorder = Depends(get_countersignature_recorder),
    settings: Settings = Depends(get_settings),
):
    """Record the counterparty's drawn signature."""
    result = await recorder.sign(document_id, body.image_bytes(), access_token)

    logger.info(f"Signature recorded, url_ttl={settings.signed_url_ttl_seconds}s")
    return SignatureResponse(
        success=True,
        signed_at=result.document.signed_at,
        signature_url=result.signature_url,
        document=result.view,
    )
