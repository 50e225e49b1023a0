"""
Service error taxonomy.

Every business failure raised by the services carries a stable ``kind`` (the
machine-readable code clients switch on), an HTTP status for the API layer,
a human message, and structured ``details`` (which resource, what was
requested vs. available). Only ConflictError is worth retrying, and only by
repeating the entire operation.
"""
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
import structlog


logger = structlog.get_logger(__name__)


class ServiceError(Exception):
    kind = "ServiceError"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"errorKind": self.kind, "message": self.message, "details": self.details}


class ValidationError(ServiceError):
    """Missing or malformed input."""
    kind = "ValidationError"
    status_code = 400


class NotFoundError(ServiceError):
    """A referenced contract, employee, material, vehicle or order does not exist."""
    kind = "NotFoundError"
    status_code = 404


class ConflictError(ServiceError):
    """Insufficient stock, vehicle unavailable, duplicate assignment or version mismatch."""
    kind = "ConflictError"
    status_code = 409
    retryable = True


class StateError(ServiceError):
    """Illegal state transition or mutation of a terminal order."""
    kind = "StateError"
    status_code = 400


class PersistenceError(ServiceError):
    kind = "PersistenceError"
    status_code = 500


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ServiceError)
    async def _service_error(request: Request, exc: ServiceError):
        logger.info(
            "request_failed",
            error_kind=exc.kind,
            message=exc.message,
            path=request.url.path,
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_error(request: Request, exc: RequestValidationError):
        body = ValidationError("Invalid request", details={"errors": jsonable_encoder(exc.errors())}).to_dict()
        return JSONResponse(status_code=400, content=body, media_type="application/json")
