"""
HTTP middleware for the daemon API: CORS, API key guard and request logging.
"""

import logging
import secrets
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from davsync.config import config

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
OPEN_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})


def reject_api_key(path: str, presented: Optional[str]) -> Optional[JSONResponse]:
    """
    Return an error response when the request may not proceed, else None.

    An unset DAVSYNC_API_KEY disables the guard, which is how a loopback-only
    daemon normally runs.
    """
    expected = config.DAVSYNC_API_KEY
    if not expected or path in OPEN_PATHS:
        return None
    if not presented:
        return JSONResponse(status_code=401, content={"detail": f"Missing {API_KEY_HEADER} header"})
    if not secrets.compare_digest(presented.encode(), expected.encode()):
        return JSONResponse(status_code=403, content={"detail": "Invalid API key"})
    return None


async def guard_and_log(request: Request, call_next):
    started = time.monotonic()
    rejection = reject_api_key(request.url.path, request.headers.get(API_KEY_HEADER))
    response = rejection if rejection is not None else await call_next(request)
    elapsed_ms = (time.monotonic() - started) * 1000
    logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms)")
    return response


def register_middleware(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
    )
    app.middleware("http")(guard_and_log)
