"""
Health check endpoints for diagnosing service dependencies.
"""
from fastapi import APIRouter, Depends

from app.config import get_settings, Settings
from app.email import EmailService, get_email_service

router = APIRouter(
    prefix="/health",
    tags=["health"],
)


@router.get("")
async def health_check():
    return {"status": "healthy"}


@router.get("/dependencies")
async def health_check_dependencies(
    settings: Settings = Depends(get_settings),
    email_service: EmailService = Depends(get_email_service),
):
    """
    Report which collaborators are configured.

    Only presence is checked; no network calls are made and no values are
    returned.
    """
    checks = {
        "supabase": bool(settings.supabase_url and settings.supabase_service_key),
        "admin_proxy": bool(settings.admin_api_secret),
        "gcs_bucket": bool(settings.gcs_bucket),
        "email": email_service.is_configured(),
        "access_code_salt": bool(settings.access_code_salt),
    }
    # Email is optional: codes are still issued when delivery is unavailable
    required = {name: ok for name, ok in checks.items() if name != "email"}

    return {
        "status": "healthy" if all(required.values()) else "degraded",
        "environment": settings.environment,
        "checks": checks,
    }
