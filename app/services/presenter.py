"""
Document presenter.

Builds the display view of a document: a copy of the snapshot with the
provider signature, counterparty signature and private logo references
replaced by short-lived signed URLs, plus the top-level row fields the
viewer shows next to the content.
"""
import copy
import logging
from typing import Any, Dict, Optional

from app.assets import is_public_reference
from app.config import get_settings, Settings
from app.gcs import SignedUrlIssuer, get_signed_url_issuer
from app.models import (
    COUNTERPARTY_SIGNATURE_FIELD,
    LOGO_FIELD,
    PROVIDER_SIGNATURE_FIELD,
    Document,
    DocumentView,
)

logger = logging.getLogger(__name__)


class DocumentPresenter:
    """Turns stored documents into views; signing failures degrade, never raise."""

    def __init__(self, issuer: SignedUrlIssuer, settings: Optional[Settings] = None):
        self.issuer = issuer
        self.settings = settings or get_settings()

    def _logo_url(self, ref: Optional[str]) -> Optional[str]:
        if not ref:
            return None
        if is_public_reference(ref, self.settings.public_asset_marker):
            return ref
        return self.issuer.display_url(ref)

    def present(self, document: Document) -> DocumentView:
        content: Dict[str, Any] = copy.deepcopy(document.content)

        provider_url = self.issuer.display_url(content.get(PROVIDER_SIGNATURE_FIELD))
        counterparty_ref = document.counterparty_signature_ref or content.get(COUNTERPARTY_SIGNATURE_FIELD)
        counterparty_url = self.issuer.display_url(counterparty_ref)
        logo_url = self._logo_url(content.get(LOGO_FIELD))

        if provider_url is not None:
            content[PROVIDER_SIGNATURE_FIELD] = provider_url
        if counterparty_url is not None:
            content[COUNTERPARTY_SIGNATURE_FIELD] = counterparty_url
        if logo_url is not None:
            content[LOGO_FIELD] = logo_url

        # Row columns win over stale snapshot copies
        if document.serial_number is not None:
            content["serialNumber"] = document.serial_number
        if document.client_name:
            content["clientName"] = document.client_name
        if document.proposal_number:
            content["proposalNumber"] = document.proposal_number
        if document.created_at is not None:
            content["date"] = document.created_at.isoformat()
        elif content.get("createdAt"):
            content["date"] = content["createdAt"]

        if not document.signature_state_consistent():
            logger.warning(f"Document {document.id[:8]}... has inconsistent signature state")

        return DocumentView(
            id=document.id,
            status=document.status,
            signed=document.is_signed,
            signed_at=document.signed_at,
            content=content,
            provider_signature_url=provider_url,
            counterparty_signature_url=counterparty_url,
            logo_url=logo_url,
        )


_presenter: Optional[DocumentPresenter] = None


def get_document_presenter() -> DocumentPresenter:
    """Get the document presenter singleton."""
    global _presenter
    if _presenter is None:
        _presenter = DocumentPresenter(get_signed_url_issuer())
    return _presenter
