"""
Visitor-facing access flow.

In-memory view model for one visit to a shared document:
AWAITING_EMAIL -> AWAITING_CODE -> VERIFIED, then the signature
confirmation. Every server error is translated into an ``error_code`` on
the view; nothing here is trusted by the server, which re-checks the
access grant on every read and on the signature.
"""
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from app.exceptions import (
    AlreadySignedError,
    AppException,
    NotFoundError,
    RateLimitException,
    UnauthorizedError,
    UpstreamFailure,
    ValidationException,
)
from app.models import DocumentView
from app.otp import AccessCodeService, get_access_code_service
from app.services.countersign import CountersignatureRecorder, get_countersignature_recorder
from app.services.presenter import DocumentPresenter, get_document_presenter

logger = logging.getLogger(__name__)

EMAIL_NOT_RECOGNIZED = "EMAIL_NOT_RECOGNIZED"
CODE_EXPIRED = "CODE_EXPIRED"
CODE_INCORRECT = "CODE_INCORRECT"
ACCESS_EXPIRED = "ACCESS_EXPIRED"
SIGNATURE_REJECTED = "SIGNATURE_REJECTED"
ALREADY_SIGNED = "ALREADY_SIGNED"
RATE_LIMITED = "RATE_LIMITED"
TRY_AGAIN = "TRY_AGAIN"
WRONG_STEP = "WRONG_STEP"
DOCUMENT_NOT_FOUND = "DOCUMENT_NOT_FOUND"


class AccessStep(str, Enum):
    AWAITING_EMAIL = "awaiting_email"
    AWAITING_CODE = "awaiting_code"
    VERIFIED = "verified"


@dataclass(frozen=True)
class AccessView:
    document_id: str
    step: AccessStep = AccessStep.AWAITING_EMAIL
    email: Optional[str] = None
    notice: Optional[str] = None
    error_code: Optional[str] = None
    document: Optional[DocumentView] = None
    signed: bool = False
    signature_url: Optional[str] = None
    debug_code: Optional[str] = None


class AccessFlow:
    """
    One visitor's walk through a shared document.

    The access grant returned by verification is held here and only here;
    opening the document again starts over at AWAITING_EMAIL.
    """

    def __init__(
        self,
        document_id: str,
        access_codes: AccessCodeService,
        presenter: DocumentPresenter,
        recorder: CountersignatureRecorder,
        client_key: Optional[str] = None,
    ):
        self.access_codes = access_codes
        self.presenter = presenter
        self.recorder = recorder
        self.client_key = client_key
        self._access_token: Optional[str] = None
        self._view = AccessView(document_id=document_id)

    @property
    def view(self) -> AccessView:
        return self._view

    @property
    def document_id(self) -> str:
        return self._view.document_id

    def _stay(self, error_code: str, notice: str) -> AccessView:
        self._view = replace(self._view, error_code=error_code, notice=notice)
        return self._view

    def _translate(self, error: AppException) -> AccessView:
        """Map a server error onto the current step; upstream errors never move it."""
        if isinstance(error, RateLimitException):
            return self._stay(RATE_LIMITED, error.message)
        if isinstance(error, UpstreamFailure):
            return self._stay(TRY_AGAIN, error.message)
        if isinstance(error, NotFoundError) and error.code != CODE_EXPIRED:
            return self._stay(DOCUMENT_NOT_FOUND, error.message)
        return self._stay(error.code, error.message)

    async def submit_email(self, email: str) -> AccessView:
        if self._view.step != AccessStep.AWAITING_EMAIL:
            return self._stay(WRONG_STEP, "Email was already submitted.")

        try:
            result = await self.access_codes.request_code(self.document_id, email, self.client_key)
        except AppException as e:
            return self._translate(e)

        if not result.success:
            return self._stay(EMAIL_NOT_RECOGNIZED, result.message)

        self._view = AccessView(
            document_id=self.document_id,
            step=AccessStep.AWAITING_CODE,
            email=email,
            notice=result.message,
            debug_code=result.code,
        )
        return self._view

    async def submit_code(self, code: str) -> AccessView:
        if self._view.step != AccessStep.AWAITING_CODE:
            return self._stay(WRONG_STEP, "Request an access code first.")

        try:
            access = await self.access_codes.verify_code(
                self.document_id, self._view.email, code, self.client_key
            )
        except UnauthorizedError as e:
            code_name = e.code if e.code != "UNAUTHORIZED" else CODE_INCORRECT
            return self._stay(code_name, e.message)
        except AppException as e:
            return self._translate(e)

        self._access_token = access.access_token
        view = self.presenter.present(access.document)
        self._view = AccessView(
            document_id=self.document_id,
            step=AccessStep.VERIFIED,
            email=self._view.email,
            notice="Access verified.",
            document=view,
            signed=view.signed,
            signature_url=view.counterparty_signature_url,
        )
        return self._view

    def back(self) -> AccessView:
        """Return to email entry; only meaningful while waiting for a code."""
        if self._view.step == AccessStep.AWAITING_CODE:
            self._view = AccessView(document_id=self.document_id)
        return self._view

    async def submit_signature(self, image_bytes: bytes) -> AccessView:
        if self._view.step != AccessStep.VERIFIED:
            return self._stay(WRONG_STEP, "Verify your email before signing.")
        if self._view.signed:
            return self._stay(ALREADY_SIGNED, "This document has already been signed.")

        try:
            result = await self.recorder.sign(self.document_id, image_bytes, self._access_token)
        except AlreadySignedError as e:
            self._view = replace(self._view, signed=True, error_code=ALREADY_SIGNED, notice=e.message)
            return self._view
        except ValidationException as e:
            return self._stay(SIGNATURE_REJECTED, e.message)
        except UnauthorizedError as e:
            # Grant expired: the visitor has to verify again
            self._access_token = None
            self._view = AccessView(
                document_id=self.document_id,
                error_code=ACCESS_EXPIRED,
                notice=e.message,
            )
            return self._view
        except AppException as e:
            return self._translate(e)

        logger.info("Signature confirmation ready")
        self._view = replace(
            self._view,
            document=result.view,
            signed=True,
            signature_url=result.signature_url or result.view.counterparty_signature_url,
            error_code=None,
            notice="Document signed successfully.",
        )
        return self._view


def open_document(document_id: str, client_key: Optional[str] = None) -> AccessFlow:
    """Start a visit at AWAITING_EMAIL."""
    return AccessFlow(
        document_id,
        access_codes=get_access_code_service(),
        presenter=get_document_presenter(),
        recorder=get_countersignature_recorder(),
        client_key=client_key,
    )
