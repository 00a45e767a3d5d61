"""
Configuration module - loads secrets from Google Secret Manager.
Falls back to environment variables for local development.
"""
import json
import os
import logging
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings
from pydantic import Field, model_validator, field_validator
from typing import List, Any

logger = logging.getLogger(__name__)


def get_secret_from_gcp(secret_id: str, project_id: Optional[str] = None) -> Optional[str]:
    """
    Fetch secret from Google Secret Manager.
    Returns None if not available (fallback to env vars).
    """
    try:
        from google.cloud import secretmanager

        client = secretmanager.SecretManagerServiceClient()
        project = project_id or os.environ.get("GCP_PROJECT_ID") or os.environ.get("GOOGLE_CLOUD_PROJECT")

        if not project:
            return None

        name = f"projects/{project}/secrets/{secret_id}/versions/latest"
        response = client.access_secret_version(request={"name": name})
        return response.payload.data.decode("UTF-8")
    except Exception as e:
        logger.debug(f"Could not fetch secret {secret_id} from Secret Manager: {e}")
        return None


class Settings(BaseSettings):
    """Application settings with Secret Manager integration."""

    # GCP
    gcp_project_id: str = Field(default="", alias="GCP_PROJECT_ID")
    load_gcp_secrets: bool = Field(default=True, alias="LOAD_GCP_SECRETS")

    # Supabase (service key for the public flow, admin-proxy for RLS bypass)
    supabase_url: str = Field(default="", alias="SUPABASE_URL")
    supabase_service_key: str = Field(default="", alias="SUPABASE_SERVICE_KEY")
    admin_api_secret: str = Field(default="", alias="ADMIN_API_SECRET")
    documents_table: str = Field(default="proposals", alias="DOCUMENTS_TABLE")
    access_sessions_table: str = Field(default="proposal_access_sessions", alias="ACCESS_SESSIONS_TABLE")

    # Private asset store (GCS)
    gcs_bucket: str = Field(default="", alias="GCS_BUCKET")
    private_asset_marker: str = Field(default="signatures", alias="PRIVATE_ASSET_MARKER")
    public_asset_marker: str = Field(default="logos", alias="PUBLIC_ASSET_MARKER")
    signed_url_ttl_seconds: int = Field(
        default=60,
        alias="SIGNED_URL_TTL_SECONDS",
        description="Validity of signed asset URLs handed to the counterparty (default 60s)"
    )

    # Access codes
    access_code_length: int = Field(default=6, ge=4, le=10, alias="ACCESS_CODE_LENGTH")
    access_code_ttl_seconds: int = Field(
        default=900,
        alias="ACCESS_CODE_TTL_SECONDS",
        description="How long an emailed access code stays valid (default 15 min)"
    )
    access_code_max_attempts: int = Field(
        default=5,
        alias="ACCESS_CODE_MAX_ATTEMPTS",
        description="Wrong codes allowed before the session is locked"
    )
    access_grant_ttl_seconds: int = Field(
        default=1800,
        alias="ACCESS_GRANT_TTL_SECONDS",
        description="How long a verified visitor may read and sign (default 30 min)"
    )
    access_code_salt: str = Field(default="", alias="ACCESS_CODE_SALT")

    # Rate limiting
    code_request_rate_limit_requests: int = Field(default=5, alias="CODE_REQUEST_RATE_LIMIT_REQUESTS")
    code_request_rate_limit_window_seconds: int = Field(default=300, alias="CODE_REQUEST_RATE_LIMIT_WINDOW_SECONDS")
    code_verify_rate_limit_requests: int = Field(default=10, alias="CODE_VERIFY_RATE_LIMIT_REQUESTS")
    code_verify_rate_limit_window_seconds: int = Field(default=60, alias="CODE_VERIFY_RATE_LIMIT_WINDOW_SECONDS")

    # Countersignature
    min_signature_ink_pixels: int = Field(default=20, alias="MIN_SIGNATURE_INK_PIXELS")
    max_signature_bytes: int = Field(default=2_000_000, alias="MAX_SIGNATURE_BYTES")
    max_signature_pixels: int = Field(
        default=4_000_000,
        alias="MAX_SIGNATURE_PIXELS",
        description="Largest width x height decoded for the blank check"
    )

    # Resend (Email)
    resend_api_key: str = Field(default="", alias="RESEND_API_KEY")
    resend_from_email: str = Field(default="onboarding@resend.dev", alias="RESEND_FROM_EMAIL")
    email_brand_name: str = Field(default="Signet", alias="EMAIL_BRAND_NAME")

    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")
    debug: bool = Field(default=False, alias="DEBUG")
    expose_debug_codes: bool = Field(default=False, alias="EXPOSE_DEBUG_CODES")

    # CORS
    allowed_origins: List[str] = Field(default=[], alias="ALLOWED_ORIGINS")

    @field_validator("allowed_origins", mode='before')
    @classmethod
    def _parse_allowed_origins(cls, v: Any) -> List[str]:
        """Parse ALLOWED_ORIGINS from JSON list, CSV, semicolon-separated string, or list."""
        if v is None:
            return []
        if isinstance(v, list):
            return v
        if isinstance(v, str):
            s = v.strip()
            if not s:
                return []
            if s.startswith("["):
                try:
                    return json.loads(s)
                except json.JSONDecodeError:
                    pass
            parts = [p.strip() for p in s.replace(",", ";").split(";")]
            return [p for p in parts if p]
        return []

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.load_gcp_secrets:
            self._load_secrets_from_gcp()
        if self.is_production and not self.access_code_salt:
            # Unsalted code hashes are reversible from a leaked sessions table
            raise ValueError("ACCESS_CODE_SALT must be set in production")

    def _load_secrets_from_gcp(self):
        """Override settings with values from Secret Manager if available."""
        secret_mappings = {
            "supabase_url": "SUPABASE_URL",
            "supabase_service_key": "SUPABASE_SERVICE_KEY",
            "admin_api_secret": "ADMIN_API_SECRET",
            "gcs_bucket": "GCS_BUCKET",
            "resend_api_key": "RESEND_API_KEY",
            "access_code_salt": "ACCESS_CODE_SALT",
        }

        for attr, secret_id in secret_mappings.items():
            secret_value = get_secret_from_gcp(secret_id, self.gcp_project_id)
            if secret_value:
                setattr(self, attr, secret_value)
                logger.info(f"Loaded {secret_id} from Secret Manager")

    @model_validator(mode='after')
    def validate_environment(self) -> 'Settings':
        """Refuse debug code exposure in production."""
        if self.environment == "production" and self.expose_debug_codes:
            logger.error(
                "CRITICAL: EXPOSE_DEBUG_CODES is set in production! "
                "Access codes will NOT be returned to clients."
            )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def debug_codes_enabled(self) -> bool:
        """Access codes may only be echoed back outside production."""
        return self.expose_debug_codes and not self.is_production


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# =============================================================================
# CORS Configuration
# =============================================================================

# Development origins (only in non-production)
DEV_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:3000",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:3000",
]


def get_cors_origins() -> List[str]:
    """
    Get list of allowed CORS origins.

    Combines origins from ALLOWED_ORIGINS with the development origins
    when not running in production.
    """
    settings = get_settings()
    origins = set(settings.allowed_origins)

    if not settings.is_production:
        origins.update(DEV_CORS_ORIGINS)

    return sorted(origins)
