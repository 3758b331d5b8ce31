"""Response envelope shared by every endpoint."""

from datetime import datetime, timezone
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse


def request_id_of(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_response(
    request: Request,
    message: str,
    data: Any = None,
    *,
    status_code: int = status.HTTP_200_OK,
    **extra: Any,
) -> JSONResponse:
    """``{success: true, message, data?, requestId, timestamp}``."""
    content: dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        content["data"] = data
    content.update(extra)
    content["requestId"] = request_id_of(request)
    content["timestamp"] = timestamp()
    return JSONResponse(status_code=status_code, content=content)


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    **extra: Any,
) -> JSONResponse:
    """``{success: false, message, code, requestId, timestamp, ...}``."""
    content: dict[str, Any] = {"success": False, "message": message, "code": code}
    content.update({key: value for key, value in extra.items() if value is not None})
    content["requestId"] = request_id_of(request)
    content["timestamp"] = timestamp()
    return JSONResponse(status_code=status_code, content=content)
