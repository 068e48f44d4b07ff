"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes for upstream, cache and sync failures
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

Usage:
    from backend.app.core.errors import (
        HydroAPIError,
        NotFoundError,
        TotalFetchFailure,
        PersistenceWriteError,
        register_error_handlers,
    )

    raise NotFoundError("Station", id="150160180")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class HydroAPIError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(HydroAPIError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(HydroAPIError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class UnauthorizedError(HydroAPIError):
    """Caller is not allowed to run the operation (401)."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHORIZED",
        )


class UpstreamFetchError(HydroAPIError):
    """One upstream source failed (502). Recovered locally by falling back."""

    def __init__(
        self,
        source: str,
        message: str = "",
        *,
        http_status: Optional[int] = None,
    ):
        details: Dict[str, Any] = {"source": source}
        if http_status is not None:
            details["http_status"] = http_status
        super().__init__(
            message=f"Upstream source '{source}' failed: {message}",
            status_code=502,
            error_code="UPSTREAM_FETCH_FAILED",
            details=details,
        )
        self.source = source
        self.http_status = http_status


class TotalFetchFailure(HydroAPIError):
    """Both upstream sources failed and no cached snapshot exists (503)."""

    def __init__(self, failures: Optional[List[str]] = None):
        failures = failures or []
        super().__init__(
            message="All upstream sources failed and no cached data is available",
            status_code=503,
            error_code="TOTAL_FETCH_FAILURE",
            details={"failures": failures},
        )
        self.failures = failures


class PersistenceWriteError(HydroAPIError):
    """A single station could not be written to the relational store (500)."""

    def __init__(self, station_id: str, message: str = ""):
        super().__init__(
            message=f"Persisting station {station_id} failed: {message}",
            status_code=500,
            error_code="PERSISTENCE_WRITE_FAILED",
            details={"station_id": station_id},
        )
        self.station_id = station_id


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(HydroAPIError)
    async def handle_hydro_error(request: Request, exc: HydroAPIError):
        logger.error(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
