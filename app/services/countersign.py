"""
Countersignature recorder.

Records a counterparty's drawn signature against a document snapshot:

1. The access grant is validated and the document must still be unsigned.
2. The image is checked for real content (blank canvases are rejected)
   before anything is written.
3. The PNG is uploaded to the private bucket under a fresh name scoped to
   the document.
4. The snapshot is re-read, the signature merged in, and snapshot, status,
   signature reference and signed_at are written in one update guarded on
   ``status = sent``. That update is the only linearization point: if it
   misses, the uploaded object is left orphaned and the document untouched.
5. A fresh signed URL is issued for the confirmation view.
"""
import io
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from PIL import Image

from app.assets import ResolvedPath
from app.config import get_settings, Settings
from app.exceptions import (
    AlreadySignedError,
    NotFoundError,
    UpstreamFailure,
    ValidationException,
)
from app.gcs import GCSClient, SignedUrlIssuer, get_gcs_client, get_signed_url_issuer
from app.models import (
    COUNTERPARTY_SIGNATURE_FIELD,
    COUNTERPARTY_SIGNATURE_PATH_FIELD,
    Document,
    DocumentStatus,
    DocumentView,
)
from app.otp import AccessCodeService, get_access_code_service
from app.services.presenter import DocumentPresenter, get_document_presenter
from app.supabase_client import SupabaseClient, get_supabase_client
from app.utils.datetime_utils import utc_now
from app.utils.logging import fingerprint

logger = logging.getLogger(__name__)

# Luminance distance from the background that counts as ink
INK_THRESHOLD = 32


def image_pixel_count(image_bytes: bytes) -> int:
    """Width x height from the image header; nothing is decoded."""
    with Image.open(io.BytesIO(image_bytes)) as img:
        width, height = img.size
    return width * height


def count_ink_pixels(image_bytes: bytes, max_pixels: Optional[int] = None) -> int:
    """
    Count pixels that differ visibly from the image background.

    Transparent areas are flattened onto white first, so a transparent
    canvas and a white canvas are both blank. The background is the most
    common luminance value. Raises ValueError for images above
    ``max_pixels`` before decoding them.
    """
    with Image.open(io.BytesIO(image_bytes)) as img:
        width, height = img.size
        if max_pixels is not None and width * height > max_pixels:
            raise ValueError(f"Image too large to inspect: {width}x{height}")
        img.load()
        rgba = img.convert("RGBA")

    flattened = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
    flattened.alpha_composite(rgba)
    histogram = flattened.convert("L").histogram()

    background = max(range(256), key=lambda value: histogram[value])
    return sum(
        count for value, count in enumerate(histogram)
        if abs(value - background) > INK_THRESHOLD
    )


def is_blank_signature(
    image_bytes: bytes,
    min_ink_pixels: int = 20,
    max_pixels: Optional[int] = None,
) -> bool:
    """True for empty, undecodable, oversized or effectively empty drawings."""
    if not image_bytes:
        return True
    try:
        ink = count_ink_pixels(image_bytes, max_pixels)
    except Exception as e:
        logger.info(f"Signature image could not be decoded: {type(e).__name__}")
        return True
    return ink < min_ink_pixels


def merge_signature(snapshot: Optional[Dict[str, Any]], signature_ref: str, signed_at: datetime) -> Dict[str, Any]:
    """
    Return a new snapshot carrying the counterparty signature.

    Every other field is kept as is; the input is not modified.
    """
    merged = dict(snapshot or {})
    merged[COUNTERPARTY_SIGNATURE_FIELD] = signature_ref
    merged[COUNTERPARTY_SIGNATURE_PATH_FIELD] = signature_ref
    merged["status"] = DocumentStatus.SIGNED.value
    merged["signedAt"] = signed_at.isoformat()
    return merged


def build_signature_path(document_id: str, now: Optional[datetime] = None) -> str:
    """<document_id>/client_<epoch ms>_<random>.png"""
    now = now or utc_now()
    return f"{document_id}/client_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:8]}.png"


@dataclass
class SignatureResult:
    document: Document
    view: DocumentView
    signature_url: Optional[str]


class CountersignatureRecorder:

    def __init__(
        self,
        supabase: SupabaseClient,
        gcs: GCSClient,
        issuer: SignedUrlIssuer,
        access_codes: AccessCodeService,
        presenter: DocumentPresenter,
        settings: Optional[Settings] = None,
    ):
        self.supabase = supabase
        self.gcs = gcs
        self.issuer = issuer
        self.access_codes = access_codes
        self.presenter = presenter
        self.settings = settings or get_settings()

    async def _read(self, document_id: str) -> Optional[Document]:
        try:
            return await self.supabase.get_document(document_id)
        except Exception as e:
            logger.error(f"Document read failed: {type(e).__name__}: {e}")
            raise UpstreamFailure()

    def check_signature_image(self, image_bytes: bytes) -> None:
        if len(image_bytes or b"") > self.settings.max_signature_bytes:
            raise ValidationException(
                "Signature image is too large",
                details={"max_bytes": self.settings.max_signature_bytes},
            )

        max_pixels = self.settings.max_signature_pixels
        try:
            pixels = image_pixel_count(image_bytes)
        except Exception:
            # Undecodable images are rejected by the blank check below
            pixels = 0
        if pixels > max_pixels:
            raise ValidationException(
                "Signature image dimensions are too large",
                details={"max_pixels": max_pixels},
            )

        if is_blank_signature(image_bytes, self.settings.min_signature_ink_pixels, max_pixels):
            raise ValidationException("Please draw your signature before submitting")

    async def sign(self, document_id: str, image_bytes: bytes, access_token: Optional[str]) -> SignatureResult:
        await self.access_codes.validate_grant(document_id, access_token)

        document = await self._read(document_id)
        if document is None:
            raise NotFoundError("Document not found.")
        if document.is_signed:
            raise AlreadySignedError(document_id)

        self.check_signature_image(image_bytes)

        path = build_signature_path(document_id)
        try:
            self.gcs.upload_bytes(path, image_bytes)
        except Exception as e:
            logger.error(f"Signature upload failed: {type(e).__name__}: {e}")
            raise UpstreamFailure("Could not save your signature. Please try again.")

        current = await self._read(document_id)
        if current is None:
            logger.warning(f"Document vanished after upload, orphaned {path}")
            raise NotFoundError("Document not found.")

        signed_at = utc_now()
        content = merge_signature(current.content, path, signed_at)
        try:
            updated = self.supabase.sign_document(document_id, content, path, signed_at)
        except Exception as e:
            logger.error(f"Signature update failed, orphaned {path}: {type(e).__name__}: {e}")
            raise UpstreamFailure("Could not save your signature. Please try again.")

        if updated is None:
            await self._raise_for_guard_miss(document_id, path)

        if not updated.signature_state_consistent():
            logger.error(f"Document {document_id[:8]}... signed with inconsistent state")

        logger.info(f"Document countersigned, object_fp={fingerprint(path)}")
        signature_url = self.issuer.issue(ResolvedPath(path=path, original=path))
        return SignatureResult(
            document=updated,
            view=self.presenter.present(updated),
            signature_url=signature_url,
        )

    async def _raise_for_guard_miss(self, document_id: str, path: str) -> None:
        logger.warning(f"Signature update guard missed, orphaned {path}")
        latest = await self._read(document_id)
        if latest is None:
            raise NotFoundError("Document not found.")
        if latest.is_signed:
            raise AlreadySignedError(document_id)
        raise UpstreamFailure("Could not save your signature. Please try again.")


_recorder: Optional[CountersignatureRecorder] = None


def get_countersignature_recorder() -> CountersignatureRecorder:
    """Get the countersignature recorder singleton."""
    global _recorder
    if _recorder is None:
        _recorder = CountersignatureRecorder(
            supabase=get_supabase_client(),
            gcs=get_gcs_client(),
            issuer=get_signed_url_issuer(),
            access_codes=get_access_code_service(),
            presenter=get_document_presenter(),
        )
    return _recorder
