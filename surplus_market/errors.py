"""
Domain errors and their HTTP translation.

Core code (crud/*, pickup_codes, code_rotation) raises these instead of
HTTPException so it stays usable outside a request. The handlers registered by
register_exception_handlers() turn them into the same ``{"detail": {...}}`` body
shape the routers have always returned.
"""
import logging
import uuid
from typing import Any, Dict

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message, **self.details}


class ValidationError(MarketplaceError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_code = "validation_error"


class AuthenticationError(MarketplaceError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error_code = "not_authenticated"


class AuthorizationError(MarketplaceError):
    status_code = status.HTTP_403_FORBIDDEN
    error_code = "forbidden"


class NotFoundError(MarketplaceError):
    status_code = status.HTTP_404_NOT_FOUND
    error_code = "not_found"


class ConflictError(MarketplaceError):
    """Caller should retry the whole operation (usually after re-reading state)."""

    status_code = status.HTTP_409_CONFLICT
    error_code = "conflict"


class InsufficientStockError(ConflictError):
    error_code = "insufficient_stock"

    def __init__(self, message: str, *, available: int, requested: int, **details: Any) -> None:
        super().__init__(message, available=available, requested=requested, **details)
        self.available = available
        self.requested = requested


class InvalidStateError(ConflictError):
    error_code = "invalid_state"


class ExpiredResourceError(MarketplaceError):
    status_code = status.HTTP_410_GONE
    error_code = "expired"


class ExternalServiceError(MarketplaceError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "service_unavailable"


def _trace_id() -> str:
    return f"t_{uuid.uuid4().hex[:12]}"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(MarketplaceError)
    async def _marketplace_error(req: Request, exc: MarketplaceError):
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()}, headers=headers)

    @app.exception_handler(SQLAlchemyError)
    async def _store_error(req: Request, exc: SQLAlchemyError):
        trace_id = _trace_id()
        logger.exception("STORE_ERROR[%s] %s %s", trace_id, req.method, req.url.path)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "detail": {
                    "error": "store_unavailable",
                    "message": "The data store is unavailable, please retry later",
                    "trace_id": trace_id,
                }
            },
        )

    @app.exception_handler(Exception)
    async def _unhandled(req: Request, exc: Exception):
        trace_id = _trace_id()
        logger.exception("UNHANDLED_EXC[%s] %s %s", trace_id, req.method, req.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": {
                    "error": "internal_error",
                    "message": "Internal server error",
                    "trace_id": trace_id,
                }
            },
        )
