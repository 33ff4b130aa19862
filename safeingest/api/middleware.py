from __future__ import annotations

import logging
import re
import time
from typing import Callable, Optional
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

log = logging.getLogger("safeingest.api")

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a request id to every response (X-Request-ID).

    Security notes:
    - A client supplied id is kept only if it is short and made of safe
      characters; otherwise a fresh one is generated (log injection).

    """

    def __init__(self, app, *, header_name: str = "X-Request-ID", max_len: int = 128):
        super().__init__(app)
        self._header_name = header_name
        self._max_len = max_len

    async def dispatch(self, request: Request, call_next: Callable):
        rid = request.headers.get(self._header_name)
        if not rid or len(rid) > self._max_len or not _REQUEST_ID_RE.match(rid):
            rid = uuid4().hex
        request.state.request_id = rid
        response: Response = await call_next(request)
        response.headers[self._header_name] = rid
        return response


class AccessLogMiddleware(BaseHTTPMiddleware):
    """One structured log line per request.

    Security notes:
    - Never logs bodies or uploaded file names.

    """

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.monotonic()
        response: Optional[Response] = None
        try:
            response = await call_next(request)
            return response
        finally:
            log.info(
                "api_request",
                extra={
                    "request_id": getattr(request.state, "request_id", None),
                    "actor_id": getattr(request.state, "actor_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "bytes_in": request.headers.get("content-length"),
                    "status_code": getattr(response, "status_code", None),
                    "duration_ms": int((time.monotonic() - start) * 1000),
                },
            )
