"""Request body size limiting middleware."""

import logging
from typing import Callable

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from src.core.config import get_settings

logger = logging.getLogger(__name__)


def _too_large(max_size: int) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        content={
            "error": {
                "type": "request_too_large",
                "message": f"Request body exceeds maximum size of {max_size} bytes",
            }
        },
    )


async def request_size_limit_middleware(
    request: Request,
    call_next: Callable[[Request], Response],
) -> Response:
    """Reject requests whose declared body is larger than allowed.

    Checkout payloads and provider webhook events are small; anything beyond
    MAX_REQUEST_BODY_SIZE is refused before the body is read.

    Args:
        request: The incoming request.
        call_next: Next middleware or route handler.

    Returns:
        Response: Either the downstream response or a 413 error.
    """
    max_size = get_settings().max_request_body_size

    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit():
        length = int(content_length)
        if length > max_size:
            logger.warning(
                "Rejected %s %s: body of %d bytes exceeds %d",
                request.method,
                request.url.path,
                length,
                max_size,
            )
            return _too_large(max_size)

    return await call_next(request)
