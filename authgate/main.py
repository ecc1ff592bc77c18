"""
Main entry point for FastAPI application.
"""
from contextlib import asynccontextmanager
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from authgate.errors import (
    AuthError,
    InvalidFactor,
    Unauthenticated,
    VerificationCodeInvalid,
)
from authgate.routes import clients, sessions, users
from authgate.utils.db_async import init_db, dispose_engine, DATABASE_URL
from authgate.utils.db_url import describe_database_url

from authgate.logging_config import setup_logging
from authgate.config import settings

import logging
logger = logging.getLogger(__name__)

setup_logging(
    level=settings.log_level,
    access_log=settings.access_log,
    audit_level=settings.audit_log_level,
)

@asynccontextmanager
async def lifespan(app: FastAPI):
    should_init_db = (
        settings.is_dev
        and settings.auto_init_db
        and not os.getenv("FLY_APP_NAME")
    )

    if should_init_db:
        logger.info("Running init_db()…")
        logger.info(f"DB target: {describe_database_url(DATABASE_URL)}")
        try:
            await init_db()
            logger.info("DB ready.")
        except Exception:
            logger.exception("init_db failed")
            raise
    else:
        logger.info("Skipping init_db(); auto_init_db disabled or managed deployment detected")

    yield

    try:
        logger.info("Disposing DB engine…")
        await dispose_engine()
        logger.info("DB engine disposed.")
    except Exception:
        logger.exception("Failed to dispose DB engine")


async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render service failures.

    Credential and identity failures collapse to one generic 401 so callers
    cannot tell an unknown account from a wrong secret, a revoked session or
    a replayed token. Wrong login factors, stale login steps and bad
    verification codes keep their own codes since the caller needs them to
    proceed.
    """
    if isinstance(exc, InvalidFactor):
        payload = {
            "error": exc.code,
            "detail": "Incorrect credentials.",
            "attemptsRemaining": exc.attempts_remaining,
        }
    elif isinstance(exc, VerificationCodeInvalid):
        payload = {"error": exc.code, "detail": "Code is invalid or expired."}
    elif isinstance(exc, Unauthenticated):
        logger.info(
            "Authentication failed on %s %s: %s",
            request.method,
            request.url.path,
            type(exc).__name__,
        )
        return JSONResponse(
            status_code=401,
            content={"error": "authentication-failed", "detail": "Authentication failed."},
        )
    else:
        payload = {"error": exc.code, "detail": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=payload)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all: log the traceback, return a generic 500."""
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=500,
        content={"error": "internal-server-error", "detail": "Internal server error"},
    )


app = FastAPI(title="authgate", lifespan=lifespan)
app.add_exception_handler(AuthError, auth_error_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, unhandled_exception_handler)
app.include_router(sessions.router)
app.include_router(users.router)
app.include_router(clients.router)

@app.get("/health")
async def health_check():
    """Health Check Endpoint"""
    return {"data": {"status": "ok"}}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
