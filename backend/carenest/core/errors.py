"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from backend.carenest.core.errors import (
        CareNestError,
        ValidationError,
        RateLimitError,
        register_error_handlers,
    )

    raise NotFoundError("Subject", id="child-1")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.carenest.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class CareNestError(Exception):
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


class ValidationError(CareNestError):
    """Input validation failed (422)."""

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        error_code: str = "VALIDATION_ERROR",
        **details: Any,
    ):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code=error_code,
            details=d,
        )


class AuthError(CareNestError):
    """Missing or invalid caller identity (401)."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="UNAUTHORIZED",
        )


class PermissionDeniedError(CareNestError):
    """Caller is identified but may not act on this resource (403)."""

    def __init__(self, message: str = "Forbidden", **details: Any):
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
            details=details,
        )


class NotFoundError(CareNestError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class RateLimitError(CareNestError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60):
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after_seconds": retry_after},
        )

    @property
    def retry_after(self) -> int:
        return self.details["retry_after_seconds"]


class DependencyError(CareNestError):
    """Store or messaging collaborator failed (502)."""

    def __init__(self, dependency: str, message: str = "", **details: Any):
        super().__init__(
            message=f"Dependency '{dependency}' failed: {message}",
            status_code=502,
            error_code="DEPENDENCY_ERROR",
            details={"dependency": dependency, **details},
        )


class ConditionalWriteError(CareNestError):
    """A conditional store write lost against a concurrent writer (409)."""

    def __init__(self, collection: str, key: str, expected_version: Optional[int]):
        super().__init__(
            message=f"Conditional write on {collection}/{key} failed",
            status_code=409,
            error_code="CONDITIONAL_WRITE_FAILED",
            details={
                "collection": collection,
                "key": key,
                "expected_version": expected_version,
            },
        )


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

    response = JSONResponse(status_code=status_code, content=body)
    if details and "retry_after_seconds" in details:
        response.headers["Retry-After"] = str(details["retry_after_seconds"])
    return response


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(CareNestError)
    async def handle_carenest_error(request: Request, exc: CareNestError):
        level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
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
