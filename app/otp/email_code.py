"""
Email one-time code service gating the public document view.

Flow:
1. request_code: the submitted email must match the document's counterparty
   address; a numeric code is generated server side, stored hashed in a new
   access session (older active sessions for the pair are superseded) and
   emailed. Delivery failure does not fail the request.
2. verify_code: the newest active session for (document, email) is checked
   for expiry and attempts, the code compared in constant time, and on a
   match the session is consumed atomically and a short-lived access grant
   is returned together with the document.
3. validate_grant: later reads and the countersignature present the grant.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from app.config import get_settings, Settings
from app.email import EmailDeliveryStatus, EmailService
from app.exceptions import (
    NotFoundError,
    RateLimitException,
    UnauthorizedError,
    UpstreamFailure,
)
from app.models import AccessConsumedReason, AccessSession, Document
from app.supabase_client import SupabaseClient
from app.utils.datetime_utils import expires_in, is_past, utc_now
from app.utils.logging import fingerprint, mask_email, set_context
from app.utils.rate_limiter import (
    RateLimiter,
    get_code_request_limiter,
    get_code_verify_limiter,
)
from app.utils.security import (
    generate_access_code,
    generate_grant_token,
    hash_access_code,
    hash_grant_token,
    normalize_email,
    verify_access_code,
)

logger = logging.getLogger(__name__)

EMAIL_NOT_RECOGNIZED = "This email address is not authorized for this document."


@dataclass
class CodeRequestResult:
    """Outcome of a code request. ``code`` is only set when debug codes are enabled."""
    success: bool
    message: str
    expires_at: Optional[datetime] = None
    delivery_status: Optional[EmailDeliveryStatus] = None
    code: Optional[str] = None


@dataclass
class VerifiedAccess:
    """A consumed code: the document plus the grant for the rest of the visit."""
    document: Document
    access_token: str
    access_expires_at: datetime
    session_id: str


class AccessCodeService:
    """Issues and verifies email access codes; never lets the client pick a code."""

    def __init__(
        self,
        supabase: SupabaseClient,
        email_service: EmailService,
        settings: Optional[Settings] = None,
        request_limiter: Optional[RateLimiter] = None,
        verify_limiter: Optional[RateLimiter] = None,
    ):
        self.supabase = supabase
        self.email_service = email_service
        self.settings = settings or get_settings()
        self.request_limiter = request_limiter or get_code_request_limiter()
        self.verify_limiter = verify_limiter or get_code_verify_limiter()

    @staticmethod
    def _check_rate(limiter: RateLimiter, key: str) -> None:
        allowed, retry_after = limiter.is_allowed(key)
        if not allowed:
            logger.warning(f"Rate limit hit for key_fp={fingerprint(key)}")
            raise RateLimitException(retry_after)

    async def _load_document(self, document_id: str) -> Optional[Document]:
        try:
            return await self.supabase.get_document(document_id)
        except Exception as e:
            logger.error(f"Document lookup failed: {type(e).__name__}: {e}")
            raise UpstreamFailure()

    async def request_code(
        self,
        document_id: str,
        email: str,
        client_key: Optional[str] = None,
    ) -> CodeRequestResult:
        """Issue a fresh code for (document, email) if the address is authorized."""
        set_context(document_id=document_id)
        normalized = normalize_email(email)
        # The address bucket holds even when the client rotates its IP
        self._check_rate(self.request_limiter, f"{document_id}:{normalized}")
        if client_key:
            self._check_rate(self.request_limiter, f"{document_id}:ip:{client_key}")

        document = await self._load_document(document_id)
        authorized = normalize_email(document.authorized_email) if document else ""
        if not document or not authorized or authorized != normalized:
            logger.info(f"Code request rejected for {mask_email(normalized)}, email_fp={fingerprint(normalized)}")
            return CodeRequestResult(success=False, message=EMAIL_NOT_RECOGNIZED)

        code = generate_access_code(self.settings.access_code_length)
        issued_at = utc_now()
        expires_at = expires_in(self.settings.access_code_ttl_seconds, issued_at)

        try:
            superseded = self.supabase.supersede_access_sessions(document_id, normalized)
            session = await self.supabase.create_access_session(
                document_id=document_id,
                email=normalized,
                code_hash=hash_access_code(document_id, normalized, code),
                issued_at=issued_at,
                expires_at=expires_at,
            )
        except Exception as e:
            logger.error(f"Access session persistence failed: {type(e).__name__}: {e}")
            raise UpstreamFailure()

        set_context(session_fp=fingerprint(session.id))
        logger.info(f"Access code issued, superseded={superseded}")

        delivery = await self.email_service.send_access_code(
            to_email=normalized,
            code=code,
            ttl_seconds=self.settings.access_code_ttl_seconds,
        )
        if delivery.success:
            message = "An access code was sent to your email."
        else:
            logger.warning(f"Access code email not delivered: {delivery.delivery_status.value}")
            message = "The access code could not be emailed right now. Please try again shortly."

        debug_code = None
        if self.settings.debug_codes_enabled:
            logger.warning("Returning access code to client (debug codes enabled)")
            debug_code = code

        return CodeRequestResult(
            success=True,
            message=message,
            expires_at=expires_at,
            delivery_status=delivery.delivery_status,
            code=debug_code,
        )

    async def verify_code(
        self,
        document_id: str,
        email: str,
        code: str,
        client_key: Optional[str] = None,
    ) -> VerifiedAccess:
        """
        Check a submitted code against the newest active session.

        Raises NotFoundError when there is no live session (never issued,
        expired, consumed or superseded) and UnauthorizedError on a wrong
        code or address.
        """
        set_context(document_id=document_id)
        normalized = normalize_email(email)
        self._check_rate(self.verify_limiter, f"{client_key or normalized}:{document_id}")

        try:
            session = await self.supabase.get_active_access_session(document_id, normalized)
        except Exception as e:
            logger.error(f"Access session lookup failed: {type(e).__name__}: {e}")
            raise UpstreamFailure()

        if session is None:
            raise NotFoundError("The code has expired or is invalid. Request a new one.", code="CODE_EXPIRED")

        set_context(session_fp=fingerprint(session.id))

        if is_past(session.expires_at):
            self._consume_quietly(session, AccessConsumedReason.EXPIRED)
            raise NotFoundError("The code has expired. Request a new one.", code="CODE_EXPIRED")

        if not verify_access_code(document_id, normalized, code, session.code_hash):
            await self._reject_code(session)

        token, token_hash = generate_grant_token()
        grant_expires_at = expires_in(self.settings.access_grant_ttl_seconds)
        try:
            consumed = self.supabase.consume_access_session(
                session.id,
                AccessConsumedReason.VERIFIED,
                grant_hash=token_hash,
                grant_expires_at=grant_expires_at,
            )
        except Exception as e:
            logger.error(f"Access session consume failed: {type(e).__name__}: {e}")
            raise UpstreamFailure()

        if not consumed:
            logger.warning("Access session consumed concurrently")
            raise NotFoundError("The code has already been used. Request a new one.", code="CODE_EXPIRED")

        document = await self._load_document(document_id)
        if document is None:
            raise NotFoundError("Document not found.")
        if normalize_email(document.authorized_email) != normalized:
            raise UnauthorizedError(EMAIL_NOT_RECOGNIZED, code="EMAIL_NOT_RECOGNIZED")

        self.verify_limiter.reset(f"{client_key or normalized}:{document_id}")
        logger.info("Access verified")
        return VerifiedAccess(
            document=document,
            access_token=token,
            access_expires_at=grant_expires_at,
            session_id=session.id,
        )

    async def _reject_code(self, session: AccessSession) -> None:
        max_attempts = self.settings.access_code_max_attempts
        try:
            session = await self.supabase.record_failed_attempt(session, max_attempts)
        except Exception as e:
            logger.error(f"Failed attempt not recorded: {type(e).__name__}: {e}")
            raise UpstreamFailure()

        remaining = max(0, max_attempts - session.verify_attempts)
        logger.info(f"Incorrect access code, attempts_remaining={remaining}")
        if remaining == 0:
            raise UnauthorizedError(
                "Too many incorrect codes. Request a new one.",
                code="CODE_LOCKED",
                details={"attempts_remaining": 0},
            )
        raise UnauthorizedError(
            "Incorrect code.",
            code="CODE_INCORRECT",
            details={"attempts_remaining": remaining},
        )

    def _consume_quietly(self, session: AccessSession, reason: AccessConsumedReason) -> None:
        """Best-effort cleanup; the caller's error is what the visitor sees."""
        try:
            self.supabase.consume_access_session(session.id, reason)
        except Exception as e:
            logger.warning(f"Could not mark session {reason.value}: {e}")

    async def validate_grant(self, document_id: str, token: Optional[str]) -> AccessSession:
        """Resolve an access grant for this document or raise UnauthorizedError."""
        if not token:
            raise UnauthorizedError("Verify your email to open this document.", code="ACCESS_NOT_VERIFIED")

        try:
            session = await self.supabase.get_session_by_grant(document_id, hash_grant_token(token))
        except Exception as e:
            logger.error(f"Grant lookup failed: {type(e).__name__}: {e}")
            raise UpstreamFailure()

        if (
            session is None
            or session.consumed_reason != AccessConsumedReason.VERIFIED
            or is_past(session.grant_expires_at)
        ):
            raise UnauthorizedError("Your access has expired. Verify your email again.", code="ACCESS_EXPIRED")

        set_context(document_id=document_id, session_fp=fingerprint(session.id))
        return session
