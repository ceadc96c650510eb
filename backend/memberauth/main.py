# backend/memberauth/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from memberauth.api.routers.admin import admin_router
from memberauth.api.routers.auth import auth_router
from memberauth.api.routers.two_factor import two_factor_router
from memberauth.core.config import settings
from memberauth.core.rate_limit import get_real_client_ip, limiter
from memberauth.core.request_context import RequestContextMiddleware
from memberauth.core.security_logger import security_log

# Import all models to ensure they are registered in the metadata
from memberauth.db import base  # noqa: F401
from memberauth.db import session as db_session_module
from memberauth.db.session import lifespan_db_manager
from memberauth.exceptions import (
    AccountNotFound,
    ConfigurationError,
    DuplicateAccount,
    StorageUnavailable,
    TwoFactorError,
)
from memberauth.services.auth_service import AuthService

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def build_auth_service() -> AuthService:
    """Refuses to start the API without a signing secret."""
    try:
        return AuthService.from_settings(settings)
    except ConfigurationError as e:
        logger.critical(f"Startup aborted: {e.message}")
        raise


async def _ensure_first_superuser(service: AuthService) -> None:
    if not (settings.FIRST_SUPERUSER_USERNAME and settings.FIRST_SUPERUSER_PASSWORD):
        logger.info("No initial superuser configured; skipping bootstrap.")
        return
    async with db_session_module.SessionLocal() as session:
        try:
            await service.ensure_first_superuser(
                session,
                username=settings.FIRST_SUPERUSER_USERNAME,
                password=settings.FIRST_SUPERUSER_PASSWORD,
                full_name=settings.FIRST_SUPERUSER_FULL_NAME,
            )
        except (StorageUnavailable, DuplicateAccount, ValidationError) as e:
            # The API is still usable without the bootstrap account.
            logger.error(f"Initial superuser could not be created: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app_instance: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.ENVIRONMENT})")

    # Configuration before the database: a missing secret must fail fast.
    app_instance.state.auth_service = build_auth_service()
    await lifespan_db_manager(app_instance, "startup")
    await _ensure_first_superuser(app_instance.state.auth_service)

    yield

    logger.info(f"Shutting down {settings.APP_NAME}")
    await lifespan_db_manager(app_instance, "shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=settings.APP_DESCRIPTION,
    lifespan=lifespan,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url=f"{settings.API_V1_STR}/docs",
    redoc_url=f"{settings.API_V1_STR}/redoc",
)

# --- Rate Limiting Setup ---
app.state.limiter = limiter


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    security_log.rate_limited(get_real_client_ip(request), request.url.path)
    return _rate_limit_exceeded_handler(request, exc)


app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# --- Middleware ---
if settings.BACKEND_CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.strip("/") for origin in settings.BACKEND_CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    logger.info(f"CORS enabled for origins: {settings.BACKEND_CORS_ORIGINS}")
else:
    logger.info("CORS disabled (BACKEND_CORS_ORIGINS not configured).")

app.add_middleware(RequestContextMiddleware)


# --- Exception Handlers ---
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    # Submitted values are left out of both the log and the response: they may be passwords.
    errors = [{"loc": err.get("loc"), "msg": err.get("msg"), "type": err.get("type")} for err in exc.errors()]
    logger.info(f"Validation failed for {request.method} {request.url.path}: {[e['loc'] for e in errors]}")
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": errors})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    level = logging.ERROR if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR else logging.DEBUG
    logger.log(level, f"{request.method} {request.url.path} -> {exc.status_code} {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers
    )


@app.exception_handler(StorageUnavailable)
async def storage_unavailable_handler(request: Request, exc: StorageUnavailable):
    logger.error(f"Storage unavailable during {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Service temporarily unavailable. Please try again later."},
    )


@app.exception_handler(DuplicateAccount)
async def duplicate_account_handler(request: Request, exc: DuplicateAccount):
    logger.info(f"Duplicate account rejected on {request.url.path}: {exc.username}")
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST, content={"detail": "ACCOUNT_ALREADY_EXISTS"}
    )


@app.exception_handler(AccountNotFound)
async def account_not_found_handler(_request: Request, _exc: AccountNotFound):
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "ACCOUNT_NOT_FOUND"})


@app.exception_handler(TwoFactorError)
async def two_factor_error_handler(request: Request, exc: TwoFactorError):
    logger.info(f"Two-factor step refused on {request.url.path}: {exc.code}")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": exc.code})


@app.exception_handler(Exception)
async def generic_exception_handler_custom(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception during request: {request.method} {request.url.path}", exc_info=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "An unexpected internal server error occurred."},
    )


# --- API v1 Router Definition and Inclusions ---
api_v1_router = APIRouter()
api_v1_router.include_router(auth_router, prefix="/auth", tags=["Auth - Authentication"])
api_v1_router.include_router(two_factor_router, prefix="/auth/2fa", tags=["Auth - Two-Factor"])
api_v1_router.include_router(admin_router, prefix="/admin", tags=["Admins - Account Management"])

app.include_router(api_v1_router, prefix=settings.API_V1_STR)


# --- Health Check Endpoint (at app root) ---
@app.get(
    "/health",
    tags=["System Health"],
    summary="Basic System Liveness Check",
    status_code=status.HTTP_200_OK,
    include_in_schema=False,
)
async def health_check_basic_system():
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting Uvicorn server directly for {settings.APP_NAME} (local debugging)...")
    uvicorn.run(
        "memberauth.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
