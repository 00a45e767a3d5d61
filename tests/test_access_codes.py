"""
Tests for email access code issuance and verification.
"""
import pytest

from app.email import EmailDeliveryStatus
from app.exceptions import (
    NotFoundError,
    RateLimitException,
    UnauthorizedError,
    UpstreamFailure,
)
from app.models import AccessConsumedReason, DocumentStatus
from app.otp import AccessCodeService
from app.utils.datetime_utils import seconds_until
from app.utils.rate_limiter import RateLimiter

from conftest import make_settings


def wrong_code_for(code: str) -> str:
    return "".join(str((int(c) + 1) % 10) for c in code)


class TestRequestCode:
    """Tests for request_code()."""

    @pytest.mark.asyncio
    async def test_mismatched_email_rejected_without_code(self, access_codes, fake_supabase, fake_email):
        result = await access_codes.request_code("D1", "b@x.com")

        assert result.success is False
        assert result.code is None
        assert fake_email.sent == []
        assert fake_supabase.sessions == {}

    @pytest.mark.asyncio
    async def test_unknown_document_same_answer_as_mismatch(self, access_codes, fake_email):
        unknown = await access_codes.request_code("missing-doc", "a@x.com")
        mismatch = await access_codes.request_code("D1", "b@x.com")

        assert unknown.success is False
        assert unknown.message == mismatch.message
        assert fake_email.sent == []

    @pytest.mark.asyncio
    async def test_match_issues_six_digit_code(self, access_codes, fake_supabase, fake_email):
        result = await access_codes.request_code("D1", "a@x.com")

        assert result.success is True
        assert result.delivery_status == EmailDeliveryStatus.SENT
        assert len(fake_email.sent) == 1
        code = fake_email.last_code
        assert len(code) == 6 and code.isdigit()
        assert 890 <= seconds_until(result.expires_at) <= 900

        # Only the hash is stored
        (session,) = fake_supabase.sessions.values()
        assert code not in session["code_hash"]
        assert session["email"] == "a@x.com"

    @pytest.mark.asyncio
    async def test_email_normalized(self, access_codes, fake_email):
        result = await access_codes.request_code("D1", "  A@X.COM ")

        assert result.success is True
        assert fake_email.sent[0]["to"] == "a@x.com"

    @pytest.mark.asyncio
    async def test_snapshot_email_used_when_column_empty(self, access_codes, fake_supabase):
        fake_supabase.documents["D1"]["client_email"] = None
        fake_supabase.documents["D1"]["proposal_data"]["clientEmail"] = "a@x.com"

        result = await access_codes.request_code("D1", "a@x.com")

        assert result.success is True

    @pytest.mark.asyncio
    async def test_delivery_failure_still_succeeds(self, access_codes, fake_email):
        fake_email.fail = True

        result = await access_codes.request_code("D1", "a@x.com")

        assert result.success is True
        assert result.delivery_status == EmailDeliveryStatus.FAILED
        assert "could not be emailed" in result.message

    @pytest.mark.asyncio
    async def test_code_hidden_unless_debug_codes_enabled(self, access_codes):
        result = await access_codes.request_code("D1", "a@x.com")
        assert result.code is None

    @pytest.mark.asyncio
    async def test_debug_code_returned_outside_production(self, fake_supabase, fake_email):
        service = AccessCodeService(
            fake_supabase,
            fake_email,
            make_settings(EXPOSE_DEBUG_CODES=True, ENVIRONMENT="development"),
            RateLimiter(100, 60),
            RateLimiter(100, 60),
        )

        result = await service.request_code("D1", "a@x.com")

        assert result.code == fake_email.last_code

    @pytest.mark.asyncio
    async def test_debug_code_never_returned_in_production(self, fake_supabase, fake_email):
        service = AccessCodeService(
            fake_supabase,
            fake_email,
            make_settings(EXPOSE_DEBUG_CODES=True, ENVIRONMENT="production"),
            RateLimiter(100, 60),
            RateLimiter(100, 60),
        )

        result = await service.request_code("D1", "a@x.com")

        assert result.code is None

    @pytest.mark.asyncio
    async def test_new_request_supersedes_previous(self, access_codes, fake_supabase):
        await access_codes.request_code("D1", "a@x.com")
        await access_codes.request_code("D1", "a@x.com")

        reasons = sorted(str(s["consumed_reason"]) for s in fake_supabase.sessions.values())
        assert reasons == ["None", AccessConsumedReason.SUPERSEDED.value]

    @pytest.mark.asyncio
    async def test_rate_limited(self, fake_supabase, fake_email, settings):
        service = AccessCodeService(
            fake_supabase, fake_email, settings,
            request_limiter=RateLimiter(max_requests=1, window_seconds=300),
            verify_limiter=RateLimiter(100, 60),
        )
        await service.request_code("D1", "a@x.com", client_key="1.2.3.4")

        with pytest.raises(RateLimitException) as exc_info:
            await service.request_code("D1", "a@x.com", client_key="1.2.3.4")

        assert exc_info.value.details["retry_after"] > 0
        assert len(fake_email.sent) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_holds_across_client_keys(self, fake_supabase, fake_email, settings):
        service = AccessCodeService(
            fake_supabase, fake_email, settings,
            request_limiter=RateLimiter(max_requests=1, window_seconds=300),
            verify_limiter=RateLimiter(100, 60),
        )
        await service.request_code("D1", "a@x.com", client_key="10.0.0.1")

        for i in range(2, 6):
            with pytest.raises(RateLimitException):
                await service.request_code("D1", " A@x.com", client_key=f"10.0.0.{i}")

        assert len(fake_email.sent) == 1

    @pytest.mark.asyncio
    async def test_store_failure_is_upstream_failure(self, access_codes, fake_supabase):
        fake_supabase.fail_reads = True

        with pytest.raises(UpstreamFailure):
            await access_codes.request_code("D1", "a@x.com")


class TestVerifyCode:
    """Tests for verify_code()."""

    @pytest.mark.asyncio
    async def test_correct_code_grants_access(self, access_codes, fake_email):
        await access_codes.request_code("D1", "a@x.com")

        access = await access_codes.verify_code("D1", "a@x.com", fake_email.last_code)

        assert access.document.id == "D1"
        assert access.document.status == DocumentStatus.SENT
        assert len(access.access_token) > 20
        assert 1790 <= seconds_until(access.access_expires_at) <= 1800

    @pytest.mark.asyncio
    async def test_code_accepted_at_most_once(self, access_codes, fake_email):
        await access_codes.request_code("D1", "a@x.com")
        code = fake_email.last_code
        await access_codes.verify_code("D1", "a@x.com", code)

        with pytest.raises(NotFoundError):
            await access_codes.verify_code("D1", "a@x.com", code)

    @pytest.mark.asyncio
    async def test_superseded_code_rejected(self, access_codes, fake_email):
        await access_codes.request_code("D1", "a@x.com")
        old_code = fake_email.last_code
        await access_codes.request_code("D1", "a@x.com")
        new_code = fake_email.last_code

        if old_code != new_code:
            with pytest.raises(UnauthorizedError):
                await access_codes.verify_code("D1", "a@x.com", old_code)

        access = await access_codes.verify_code("D1", "a@x.com", new_code)
        assert access.document.id == "D1"

    @pytest.mark.asyncio
    async def test_previously_consumed_code_rejected(self, access_codes, fake_email):
        await access_codes.request_code("D1", "a@x.com")
        first = fake_email.last_code
        await access_codes.verify_code("D1", "a@x.com", first)

        await access_codes.request_code("D1", "a@x.com")
        if fake_email.last_code != first:
            with pytest.raises(UnauthorizedError):
                await access_codes.verify_code("D1", "a@x.com", first)

    @pytest.mark.asyncio
    async def test_incorrect_code(self, access_codes, fake_email, fake_supabase):
        await access_codes.request_code("D1", "a@x.com")

        with pytest.raises(UnauthorizedError) as exc_info:
            await access_codes.verify_code("D1", "a@x.com", wrong_code_for(fake_email.last_code))

        assert exc_info.value.code == "CODE_INCORRECT"
        assert exc_info.value.details["attempts_remaining"] == 4
        (session,) = fake_supabase.sessions.values()
        assert session["verify_attempts"] == 1
        assert session["consumed_at"] is None

    @pytest.mark.asyncio
    async def test_session_locked_after_max_attempts(self, access_codes, fake_email):
        await access_codes.request_code("D1", "a@x.com")
        code = fake_email.last_code
        wrong = wrong_code_for(code)

        for _ in range(4):
            with pytest.raises(UnauthorizedError):
                await access_codes.verify_code("D1", "a@x.com", wrong)

        with pytest.raises(UnauthorizedError) as exc_info:
            await access_codes.verify_code("D1", "a@x.com", wrong)
        assert exc_info.value.code == "CODE_LOCKED"

        # Even the right code no longer works
        with pytest.raises(NotFoundError):
            await access_codes.verify_code("D1", "a@x.com", code)

    @pytest.mark.asyncio
    async def test_expired_code(self, access_codes, fake_email, fake_supabase):
        await access_codes.request_code("D1", "a@x.com")
        fake_supabase.expire_sessions("D1")

        with pytest.raises(NotFoundError) as exc_info:
            await access_codes.verify_code("D1", "a@x.com", fake_email.last_code)

        assert exc_info.value.code == "CODE_EXPIRED"
        (session,) = fake_supabase.sessions.values()
        assert session["consumed_reason"] == AccessConsumedReason.EXPIRED.value

    @pytest.mark.asyncio
    async def test_no_session(self, access_codes):
        with pytest.raises(NotFoundError):
            await access_codes.verify_code("D1", "a@x.com", "123456")

    @pytest.mark.asyncio
    async def test_code_bound_to_email(self, access_codes, fake_email, fake_supabase):
        await access_codes.request_code("D1", "a@x.com")

        with pytest.raises(NotFoundError):
            await access_codes.verify_code("D1", "b@x.com", fake_email.last_code)

    @pytest.mark.asyncio
    async def test_verify_rate_limited(self, fake_supabase, fake_email, settings):
        service = AccessCodeService(
            fake_supabase, fake_email, settings,
            request_limiter=RateLimiter(100, 60),
            verify_limiter=RateLimiter(max_requests=2, window_seconds=60),
        )
        await service.request_code("D1", "a@x.com")
        wrong = wrong_code_for(fake_email.last_code)

        for _ in range(2):
            with pytest.raises(UnauthorizedError):
                await service.verify_code("D1", "a@x.com", wrong, client_key="ip")

        with pytest.raises(RateLimitException):
            await service.verify_code("D1", "a@x.com", fake_email.last_code, client_key="ip")


class TestValidateGrant:
    """Tests for validate_grant()."""

    @pytest.mark.asyncio
    async def test_valid_grant(self, access_codes, fake_email):
        await access_codes.request_code("D1", "a@x.com")
        access = await access_codes.verify_code("D1", "a@x.com", fake_email.last_code)

        session = await access_codes.validate_grant("D1", access.access_token)

        assert session.id == access.session_id

    @pytest.mark.asyncio
    async def test_missing_token(self, access_codes):
        with pytest.raises(UnauthorizedError) as exc_info:
            await access_codes.validate_grant("D1", None)
        assert exc_info.value.code == "ACCESS_NOT_VERIFIED"

    @pytest.mark.asyncio
    async def test_unknown_token(self, access_codes):
        with pytest.raises(UnauthorizedError):
            await access_codes.validate_grant("D1", "not-a-real-token")

    @pytest.mark.asyncio
    async def test_token_for_other_document(self, access_codes, fake_supabase, fake_email, d1_row):
        fake_supabase.add_document({**d1_row, "id": "D2"})
        await access_codes.request_code("D1", "a@x.com")
        access = await access_codes.verify_code("D1", "a@x.com", fake_email.last_code)

        with pytest.raises(UnauthorizedError):
            await access_codes.validate_grant("D2", access.access_token)

    @pytest.mark.asyncio
    async def test_expired_grant(self, access_codes, fake_supabase, fake_email):
        await access_codes.request_code("D1", "a@x.com")
        access = await access_codes.verify_code("D1", "a@x.com", fake_email.last_code)
        fake_supabase.expire_grants("D1")

        with pytest.raises(UnauthorizedError) as exc_info:
            await access_codes.validate_grant("D1", access.access_token)
        assert exc_info.value.code == "ACCESS_EXPIRED"


class TestSharedDocumentScenario:
    """Full request, verify, sign walk for document D1."""

    @pytest.mark.asyncio
    async def test_d1_walkthrough(self, access_codes, recorder, fake_supabase, fake_email, signature_png):
        # (1) wrong address
        rejected = await access_codes.request_code("D1", "b@x.com")
        assert rejected.success is False

        # (2) right address
        issued = await access_codes.request_code("D1", "a@x.com")
        assert issued.success is True
        assert 890 <= seconds_until(issued.expires_at) <= 900
        code = fake_email.last_code

        # (3) wrong code
        with pytest.raises(UnauthorizedError):
            await access_codes.verify_code("D1", "a@x.com", wrong_code_for(code))

        # (4) right code
        access = await access_codes.verify_code("D1", "a@x.com", code)
        assert access.document.status == DocumentStatus.SENT

        # (5) countersign
        result = await recorder.sign("D1", signature_png, access.access_token)
        assert result.document.status == DocumentStatus.SIGNED
        assert result.document.signed_at is not None
        assert result.document.counterparty_signature_ref.startswith("D1/client_")
        assert result.document.signature_state_consistent()

        # (6) the code is spent
        with pytest.raises(NotFoundError):
            await access_codes.verify_code("D1", "a@x.com", code)
