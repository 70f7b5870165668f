import logging
import time
import uuid

from fastapi import FastAPI, Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

RESPONSE_HEADERS = {
    "X-Robots-Tag": "noindex, nofollow, noarchive",
    # Stock levels go stale immediately.
    "Cache-Control": "no-store",
    "X-Content-Type-Options": "nosniff",
}


def install_security_headers(app: FastAPI) -> None:
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        started = time.perf_counter()
        response: Response = await call_next(request)
        for name, value in RESPONSE_HEADERS.items():
            response.headers[name] = value
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "%s %s -> %s (%.1f ms, request_id=%s)",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
            request_id,
        )
        return response
