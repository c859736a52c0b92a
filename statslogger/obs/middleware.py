"""
Middleware: request latency/logging and the CORS preflight + method gate.
"""
from __future__ import annotations
import time
from typing import List
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from ..core.logger import get_logger
from ..services.receiver import resolve_remote

log = get_logger("http")

ALLOWED_METHODS = ("GET", "POST")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        t0 = time.perf_counter()
        status = 500
        try:
            response: Response = await call_next(request)
            status = response.status_code
            return response
        finally:
            dt = (time.perf_counter() - t0) * 1000.0
            metrics = getattr(request.app.state, "metrics", None)
            if metrics is not None:
                metrics.serve_latency.observe(dt)
            log.debug(
                "served path=%s method=%s src=%s user-agent=%s status=%d ms=%.2f",
                request.url.path,
                request.method,
                resolve_remote(request),
                request.headers.get("user-agent", ""),
                status,
                dt,
            )


class CorsMiddleware(BaseHTTPMiddleware):
    """
    Answers every OPTIONS request as a preflight (204, no body), tags GET/POST
    responses with the CORS headers and refuses every other method with 405.
    """

    def __init__(self, app: ASGIApp, origins: List[str] | None = None, max_age: int = 86400) -> None:
        super().__init__(app)
        self.origins = origins or ["*"]
        self.max_age = max_age

    def _headers(self, request: Request) -> dict[str, str]:
        headers = {
            "Access-Control-Allow-Methods": ", ".join(ALLOWED_METHODS),
            "Access-Control-Max-Age": str(self.max_age),
        }
        if "*" in self.origins:
            headers["Access-Control-Allow-Origin"] = "*"
        else:
            origin = request.headers.get("origin")
            if origin in self.origins:
                headers["Access-Control-Allow-Origin"] = origin
                headers["Vary"] = "Origin"
        return headers

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=self._headers(request))
        if request.method not in ALLOWED_METHODS:
            return Response(status_code=405, headers={"Allow": ", ".join(ALLOWED_METHODS + ("OPTIONS",))})
        response = await call_next(request)
        response.headers.update(self._headers(request))
        return response
