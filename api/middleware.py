"""
Global middleware and exception handlers.
"""

from __future__ import annotations

import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from connectors.errors import ConnectorError

logger = logging.getLogger(__name__)


def register_middleware(app: FastAPI) -> None:
    """Attach any app-level middleware."""

    @app.middleware("http")
    async def request_timer(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start
        response.headers["X-Process-Time"] = f"{elapsed:.4f}"
        logger.debug(
            "%s %s -> %d (%.3fs)",
            request.method, request.url.path, response.status_code, elapsed,
        )
        return response


def register_exception_handlers(app: FastAPI) -> None:
    """Turn credential-lifecycle failures into JSON error bodies."""

    @app.exception_handler(ConnectorError)
    async def connector_error_handler(request: Request, exc: ConnectorError) -> JSONResponse:
        level = logging.WARNING if exc.status_code >= 500 else logging.INFO
        logger.log(level, "%s %s failed: %s", request.method, request.url.path, exc.to_dict())
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
