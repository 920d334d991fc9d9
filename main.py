import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, configure_logging
from database import init_db
from errors import (
    ConflictError,
    LicenseError,
    RateLimitedError,
    RemoteStoreError,
    StoreNotConfiguredError,
    ValidationFailedError,
)
from license_service import LicenseService
from models import (
    LicenseVerificationResponse,
    LicenseSyncRequest,
    LicenseSyncResponse,
    LicenseCommitRequest,
    LicenseCommitResponse,
    CacheRefreshResponse,
    ErrorEnvelope,
    HealthCheckResponse,
    MissingKeyResponse,
)
from normalization import normalize_key
from sources import load_static_snapshot
from stores import GitHubDocumentStore, LocalFileStore, build_cache_store

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate, max-age=0",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Content-Type-Options": "nosniff",
}


def build_service() -> LicenseService:
    """Wire the service from settings. The static bundle is read here, once."""
    cache = build_cache_store(settings)
    if cache is not None and cache.name == "sql":
        init_db()

    return LicenseService(
        static_snapshot=load_static_snapshot(settings.STATIC_LICENSES_PATH),
        remote=GitHubDocumentStore.from_settings(settings),
        cache=cache,
        local_file=LocalFileStore(settings.LICENSES_FILE_PATH),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    service = build_service()
    service.start_cache_refresh()
    app.state.service = service
    try:
        yield
    finally:
        service.stop_cache_refresh()


app = FastAPI(
    title="License Manager Service",
    description="Issues and verifies license keys stored in a GitHub-hosted licenses.json",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_service(request: Request) -> LicenseService:
    return request.app.state.service


def _error(status_code: int, error: str, message: str, headers=None, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content=ErrorEnvelope(error=error, message=message, **extra).model_dump(exclude_none=True),
    )


# Error Handlers
@app.exception_handler(RequestValidationError)
async def invalid_body_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body. Expected licenses array."},
    )

@app.exception_handler(LicenseError)
async def license_error_handler(request: Request, exc: LicenseError):
    if isinstance(exc, ValidationFailedError):
        return _error(400, exc.code, exc.message)

    if isinstance(exc, ConflictError):
        return _error(200, exc.code, exc.message, retry=True)

    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after is not None else None
        return _error(429, exc.code, exc.message, headers=headers, retry_after=exc.retry_after)

    if isinstance(exc, RemoteStoreError):
        status_code = exc.status_code if exc.status_code >= 400 else 502
        return _error(status_code, exc.code, exc.message)

    if isinstance(exc, StoreNotConfiguredError):
        return _error(500, exc.code, exc.message)

    logger.error("Unhandled license error: %s", exc.code)
    return _error(500, "internal_error", "Internal server error")


async def _verify(verify: Optional[str], service: LicenseService) -> JSONResponse:
    if not normalize_key(verify):
        return JSONResponse(
            status_code=400,
            content=MissingKeyResponse(message="Missing license key parameter").model_dump(),
        )

    try:
        result = await service.verify(verify)
    except Exception:
        logger.exception("Error verifying license")
        return JSONResponse(
            status_code=500,
            content={"valid": False, "message": "Internal server error"},
        )

    return JSONResponse(content=LicenseVerificationResponse(**result).model_dump())


# API Endpoints
@app.get("/verify", response_model=LicenseVerificationResponse)
async def verify_license(
    verify: Optional[str] = None,
    service: LicenseService = Depends(get_service)
):
    """
    Verify a license key.

    Merges the static bundle, the local file, the GitHub copy and the cache,
    keeping the most recently updated record per key, then evaluates expiry.
    Unknown and expired keys still answer 200 with ``valid: false``.
    """
    return await _verify(verify, service)

@app.get("/licenses")
async def list_licenses(
    verify: Optional[str] = None,
    service: LicenseService = Depends(get_service)
):
    """
    Without ``verify``: the raw license array from the cache or GitHub,
    never cached by clients and never an error.

    With ``verify``: same as ``GET /verify``.
    """
    if verify is not None:
        return await _verify(verify, service)

    try:
        licenses = await service.list_licenses()
    except Exception:
        logger.exception("Error listing licenses")
        licenses = []

    return JSONResponse(content=licenses, headers=NO_CACHE_HEADERS)

@app.post("/sync", response_model=LicenseSyncResponse, response_model_exclude_none=True)
async def sync_licenses(
    request: LicenseSyncRequest,
    service: LicenseService = Depends(get_service)
):
    """
    Validate and persist a license collection.

    Writes to the cache when one is configured, otherwise commits to GitHub,
    otherwise writes the local file.
    """
    try:
        return await service.sync(request.licenses)
    except LicenseError:
        raise
    except Exception:
        logger.exception("Error syncing licenses")
        return _error(500, "internal_error", "Internal server error")

@app.post("/commit", response_model=LicenseCommitResponse)
async def commit_licenses(
    request: LicenseCommitRequest,
    service: LicenseService = Depends(get_service)
):
    """
    Commit a license collection to GitHub.

    The current blob sha is read first and sent with the write, so a
    concurrent edit is reported as a conflict instead of being overwritten.
    """
    try:
        return await service.commit(request.licenses, request.message)
    except LicenseError:
        raise
    except Exception:
        logger.exception("Error committing licenses")
        return _error(500, "internal_error", "Internal server error")

@app.post("/cache/refresh", response_model=CacheRefreshResponse)
async def refresh_cache(service: LicenseService = Depends(get_service)):
    """
    Mirror the reconciled license collection into the cache now.
    """
    try:
        count = await service.refresh_cache()
    except LicenseError:
        raise
    except Exception:
        logger.exception("Error refreshing cache")
        return _error(500, "internal_error", "Internal server error")
    return {"success": True, "count": count}

@app.get("/health", response_model=HealthCheckResponse)
async def health_check(service: LicenseService = Depends(get_service)):
    """
    Health check endpoint for container orchestration.
    """
    return {
        "status": "healthy",
        "service": "license-manager",
        "version": settings.APP_VERSION,
        "cacheBackend": service.cache.name if service.cache is not None else "none",
        "remoteWritable": service.remote.can_write,
        "staticLicenses": len(service.static_snapshot.records),
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
