"""Request/Response logging middleware for development and debugging.

Logs one line per request: method, path, client and duration. Request and
response bodies are never read, so refresh and access tokens never reach the
log. Enabled from main.py in dev mode only.
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

logger = logging.getLogger("refresh_rotation.requests")

# Paths to exclude from logging (noisy endpoints)
EXCLUDED_PATHS = {
    "/health",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/favicon.ico",
}

# Query parameters whose values are masked
SENSITIVE_PARAMS = ("token", "access_token", "refresh_token", "password", "key")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that logs HTTP requests and responses.

    Responses get an ``X-Request-ID`` header matching the logged id.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()

        method = request.method
        path = request.url.path
        query_params = dict(request.query_params)
        client_ip = request.client.host if request.client else "unknown"

        log_parts = [f"[{request_id}]", f"{method} {path}"]
        if query_params:
            sanitized_params = {
                k: ("***" if k.lower() in SENSITIVE_PARAMS else v)
                for k, v in query_params.items()
            }
            log_parts.append(f"params={sanitized_params}")
        log_parts.append(f"client={client_ip}")
        request_desc = " ".join(log_parts)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.time() - start_time
            logger.error(f"{request_desc} - ERROR ({duration:.3f}s): {e}")
            raise

        duration = time.time() - start_time
        status_code = response.status_code
        status_class = status_code // 100

        if status_class == 5:
            log_func = logger.error
        elif status_class == 4:
            log_func = logger.warning
        elif method == "GET":
            log_func = logger.debug
        else:
            log_func = logger.info

        log_func(f"{request_desc} - {status_code} ({duration:.3f}s)")

        response.headers["X-Request-ID"] = request_id
        return response


def configure_request_logging(log_level: str = "INFO") -> None:
    """Set the request logger's level and give it its own handler."""
    request_logger = logging.getLogger("refresh_rotation.requests")
    request_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    # Prevent duplicate emission via root logger handlers.
    request_logger.propagate = False

    if not request_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        request_logger.addHandler(handler)
