"""Custom exceptions and FastAPI error handler registration."""
from __future__ import annotations

import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .schemas.envelope import ApiResponse

logger = logging.getLogger(__name__)


# ── Custom Exceptions ────────────────────────────────────────────────


class JobNotFoundError(Exception):
    """Requested job ID does not exist."""


class InvalidJobRequestError(Exception):
    """Job submission names an unknown type or lacks a required field."""


class ApprovalStateError(Exception):
    """Approval response or stdin sent to a job that is not waiting for it."""


class SavedLogNotFoundError(Exception):
    """Requested saved log does not exist."""


class ProtectedEnvironmentError(Exception):
    """Mutating job targeted at a protected environment."""


class ConfigValidationError(Exception):
    """Runtime config patch contains invalid keys or values."""


# ── Error → HTTP mapping ────────────────────────────────────────────

_EXCEPTION_STATUS = {
    InvalidJobRequestError: 400,
    ProtectedEnvironmentError: 403,
    JobNotFoundError: 404,
    SavedLogNotFoundError: 404,
    ApprovalStateError: 409,
    ConfigValidationError: 422,
}


def _make_handler(status_code: int):
    """Create a handler that wraps an exception in ApiResponse."""

    async def _handler(request: Request, exc: Exception) -> JSONResponse:
        resp = ApiResponse.fail(str(exc))
        return JSONResponse(status_code=status_code, content=resp.model_dump())

    return _handler


def register_error_handlers(app: FastAPI) -> None:
    """Register custom exception handlers on the FastAPI app."""
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
        resp = ApiResponse.fail("Internal server error")
        return JSONResponse(status_code=500, content=resp.model_dump())
