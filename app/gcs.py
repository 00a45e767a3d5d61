"""
Google Cloud Storage client module.
Handles the private signature bucket: uploads and short-lived signed URLs.
"""
import logging
from datetime import timedelta
from typing import Optional

import google.auth
from google.auth.transport.requests import Request
from google.cloud import storage
from google.cloud.storage import Blob

from app.assets import InlineAsset, ResolvedPath, resolve
from app.config import get_settings, Settings

logger = logging.getLogger(__name__)


class GCSClient:
    """Google Cloud Storage client wrapper for the private asset bucket."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._client: Optional[storage.Client] = None
        self._bucket: Optional[storage.Bucket] = None

    @property
    def client(self) -> storage.Client:
        if self._client is None:
            self._client = storage.Client()
        return self._client

    @property
    def bucket(self) -> storage.Bucket:
        if self._bucket is None:
            self._bucket = self.client.bucket(self.settings.gcs_bucket)
        return self._bucket

    def _generate_iam_signed_url(
        self,
        blob: Blob,
        method: str,
        expiration_delta: timedelta,
    ) -> str:
        """
        Generates a V4 signed URL using the runtime service account's identity (IAM).
        This is the recommended way for Cloud Run, App Engine, etc.
        """
        credentials, _ = google.auth.default()
        credentials.refresh(Request())

        return blob.generate_signed_url(
            version="v4",
            expiration=expiration_delta,
            method=method,
            service_account_email=credentials.service_account_email,
            access_token=credentials.token,
        )

    def generate_download_signed_url(self, gcs_path: str, ttl_seconds: int) -> str:
        """
        Generate a V4 signed GET URL for an object.

        Raises FileNotFoundError when the object does not exist.
        """
        blob = self.bucket.blob(gcs_path)
        if not blob.exists():
            raise FileNotFoundError(f"File not found: {gcs_path}")

        return self._generate_iam_signed_url(
            blob=blob,
            method="GET",
            expiration_delta=timedelta(seconds=ttl_seconds),
        )

    def upload_bytes(
        self,
        gcs_path: str,
        data: bytes,
        content_type: str = "image/png",
    ) -> str:
        """
        Upload bytes to a new object.

        Refuses to overwrite: an existing object at the path is an error.
        """
        blob = self.bucket.blob(gcs_path)
        blob.upload_from_string(data, content_type=content_type, if_generation_match=0)
        logger.info(f"Uploaded {len(data)} bytes to {gcs_path}")
        return gcs_path


class SignedUrlIssuer:
    """
    Issues short-lived read URLs for private assets.

    Never raises: a missing object or a store/credential error yields None
    and the caller decides on a fallback.
    """

    def __init__(self, gcs: GCSClient, settings: Optional[Settings] = None):
        self.gcs = gcs
        self.settings = settings or gcs.settings

    def issue(self, path: ResolvedPath, ttl_seconds: Optional[int] = None) -> Optional[str]:
        ttl = ttl_seconds or self.settings.signed_url_ttl_seconds
        try:
            return self.gcs.generate_download_signed_url(path.path, ttl)
        except FileNotFoundError:
            logger.warning(f"Signed URL not issued, object missing: {path.path}")
        except Exception as e:
            logger.warning(f"Signed URL not issued for {path.path}: {type(e).__name__}: {e}")
        return None

    def display_url(self, ref: Optional[str], ttl_seconds: Optional[int] = None) -> Optional[str]:
        """
        Displayable URL for a stored reference.

        Inline references pass through, private paths are signed, and a
        failed signing falls back to the original reference.
        """
        resolved = resolve(ref, self.settings.private_asset_marker)
        if resolved is None:
            return None
        if isinstance(resolved, InlineAsset):
            return resolved.value
        return self.issue(resolved, ttl_seconds) or resolved.original


# Singleton instances
_gcs_client: Optional[GCSClient] = None
_signed_url_issuer: Optional[SignedUrlIssuer] = None


def get_gcs_client() -> GCSClient:
    """Get the GCS client singleton."""
    global _gcs_client
    if _gcs_client is None:
        _gcs_client = GCSClient()
    return _gcs_client


def get_signed_url_issuer() -> SignedUrlIssuer:
    """Get the signed URL issuer singleton."""
    global _signed_url_issuer
    if _signed_url_issuer is None:
        _signed_url_issuer = SignedUrlIssuer(get_gcs_client())
    return _signed_url_issuer
