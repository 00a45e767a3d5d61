"""
Signet Document Access Service - Main FastAPI Application
Public, email-verified access to shared documents and their countersignature.
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.config import get_settings, get_cors_origins
from app.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler,
)
from app.routers import health, public_documents
from app.utils.logging import setup_logging, RequestIdMiddleware, get_logger

logger = get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    setup_logging(
        environment=settings.environment,
        level=logging.DEBUG if settings.debug else logging.INFO,
    )
    logger.info(f"Starting Signet Document Access Service v{VERSION} ({settings.environment})")
    if settings.debug_codes_enabled:
        logger.warning("EXPOSE_DEBUG_CODES is on: access codes are returned in API responses")
    yield
    logger.info("Shutting down Signet Document Access Service")


app = FastAPI(
    title="Signet Document Access Service",
    description="""Public access to shared documents.

## Flow

1. `POST /v1/public/documents/{id}/access/request-code` emails a one-time code
   to the document's counterparty.
2. `POST /v1/public/documents/{id}/access/verify` exchanges the code for an
   access token valid for the browsing session.
3. `GET /v1/public/documents/{id}` and `POST /v1/public/documents/{id}/signature`
   require the token in the `X-Access-Token` header.
""",
    version=VERSION,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "public-documents", "description": "Email-verified document access and countersignature"},
        {"name": "health", "description": "Health check endpoints"},
    ],
)

# Middleware
app.add_middleware(RequestIdMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "Retry-After"],
)

# Exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(health.router)
app.include_router(public_documents.router)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema

    from fastapi.openapi.utils import get_openapi

    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
        tags=app.openapi_tags,
    )

    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "AccessToken": {
            "type": "apiKey",
            "in": "header",
            "name": public_documents.ACCESS_TOKEN_HEADER,
            "description": "Access token returned by the verify endpoint",
        },
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi
