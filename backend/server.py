from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from config import cors_origins_from_env, load_settings
from database import Database
from errors import AccessServiceError, UpstreamError
from routes import access, billing, checkout, webhooks
from services.account_store import AccountStore
from services.container import AppServices, build_services
from services.stripe_service import build_stripe_client

import os
import logging

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "services", None) is not None:
        # Services injected by the caller (tests); nothing to connect
        yield
        return

    # Startup - missing configuration raises and the API never serves
    logger.info("Starting BookfoldAR Access API")
    settings = load_settings()
    database = Database(settings)
    await database.connect()

    # Stripe config: log mode (test/live) from key prefix, never the key
    logger.info("STRIPE_MODE = %s (from Stripe key prefix)", settings.stripe_mode)
    if settings.stripe_mode == "test" and settings.environment == "production":
        logger.warning("STRIPE_SECRET_KEY looks like test key but ENVIRONMENT is production. Verify key.")
    logger.info("Stripe price ID in use: %s", settings.stripe_price_id)

    app.state.services = build_services(
        settings,
        AccountStore(database.get_db()),
        build_stripe_client(settings),
    )
    try:
        yield
    finally:
        # Shutdown
        logger.info("Shutting down BookfoldAR Access API")
        await database.close()


def _error_response(status_code: int, error: str, error_code: str, request_id: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": error, "error_code": error_code, "request_id": request_id},
        headers=headers,
    )


async def service_error_handler(request: Request, exc: AccessServiceError):
    request_id = str(uuid.uuid4())
    if exc.status_code >= 500:
        logger.error(
            "Request failed request_id=%s path=%s error_code=%s: %s",
            request_id, request.url.path, exc.error_code, exc,
        )
    else:
        logger.warning(
            "Request rejected request_id=%s path=%s error_code=%s: %s",
            request_id, request.url.path, exc.error_code, exc,
        )
    headers = None
    if isinstance(exc, UpstreamError) and exc.retry_after is not None:
        headers = {"Retry-After": str(exc.retry_after)}
    return _error_response(exc.status_code, exc.public_message, exc.error_code, request_id, headers)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    request_id = str(uuid.uuid4())
    detail = exc.detail
    if isinstance(detail, dict):
        message = detail.get("message") or detail.get("error") or "Request failed"
        error_code = detail.get("error_code") or "HTTP_%s" % exc.status_code
    else:
        message = str(detail)
        error_code = "HTTP_%s" % exc.status_code
    logger.warning("HTTP error request_id=%s path=%s status=%s error_code=%s", request_id, request.url.path, exc.status_code, error_code)
    return _error_response(exc.status_code, message, error_code, request_id, getattr(exc, "headers", None))


# Validation errors are user-correctable input problems: 400, not FastAPI's 422
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    request_id = str(uuid.uuid4())
    errors = exc.errors()
    fields = [".".join(str(p) for p in e.get("loc", ()) if p != "body") for e in errors]
    logger.warning(
        "Validation failed request_id=%s path=%s errors=%s",
        request_id,
        request.url.path,
        [(e.get("loc"), e.get("msg"), e.get("type")) for e in errors],
    )
    message = "Invalid request"
    if any(fields):
        message = "Invalid request: " + ", ".join(f for f in fields if f)
    return _error_response(400, message, "VALIDATION_FAILED", request_id)


# Global exception handler
async def global_exception_handler(request: Request, exc: Exception):
    request_id = str(uuid.uuid4())
    logger.error(f"Unhandled exception request_id={request_id}: {exc}", exc_info=True)
    return _error_response(500, "Internal server error", "INTERNAL_ERROR", request_id)


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    app = FastAPI(
        title="BookfoldAR Access API",
        description="Trial, lifetime purchase and Stripe webhook backend for BookfoldAR",
        version="1.0.0",
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services
        cors_origins = list(services.settings.cors_origins)
    else:
        cors_origins = list(cors_origins_from_env())

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(checkout.router)
    app.include_router(access.router)
    app.include_router(webhooks.router)
    app.include_router(billing.router)

    app.add_exception_handler(AccessServiceError, service_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    # Health check
    @app.get("/api/health")
    async def health_check():
        return {
            "status": "healthy",
            "environment": os.getenv("ENVIRONMENT", "development")
        }

    # Version/build stamp for deployment verification (commit SHA set by CI/CD, e.g. GIT_COMMIT_SHA)
    @app.get("/api/version")
    async def version_info():
        return {
            "commit_sha": os.getenv("GIT_COMMIT_SHA", os.getenv("BUILD_SHA", "unknown")),
            "environment": os.getenv("ENVIRONMENT", "development"),
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "server:app",
        host="0.0.0.0",
        port=8001,
        reload=os.getenv("ENVIRONMENT") == "development"
    )
