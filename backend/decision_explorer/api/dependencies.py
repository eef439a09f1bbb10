from typing import Optional
import secrets
import uuid

from fastapi import Header, HTTPException, Request, status
import structlog

logger = structlog.get_logger(__name__)


def new_correlation_id() -> str:
    return f"dex-{secrets.token_hex(8)}"


def get_correlation_id(
    request: Request,
    x_correlation_id: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None)
) -> str:
    """
    Get or generate correlation ID for request tracing.

    Prefers the id the logging middleware already bound to the request so
    logs and error bodies of one request agree.

    **Returns:**
    - **correlation_id**: Unique identifier for request tracing
    """
    correlation_id = (
        getattr(request.state, "correlation_id", None)
        or x_correlation_id
        or x_request_id
    )

    if not correlation_id:
        correlation_id = new_correlation_id()

    return correlation_id


def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[uuid.UUID]:
    """
    Acting user as forwarded by the gateway.

    Authentication happens upstream; this only parses the forwarded id so it
    can be stored as created_by.
    """
    if not x_user_id:
        return None
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "Invalid user id",
                "message": "X-User-ID must be a UUID"
            }
        )


def server_error(message: str, correlation_id: str) -> HTTPException:
    """Generic 500 for unexpected route failures; details stay in the logs"""
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "Internal server error",
            "message": message,
            "correlation_id": correlation_id
        }
    )


__all__ = ["get_correlation_id", "get_current_user_id", "new_correlation_id", "server_error"]
