import time
import traceback
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from apm_worker.collector.collector import Collector

REQUEST_ID_HEADER = "X-Request-Id"


class ApmMiddleware(BaseHTTPMiddleware):
    """Feeds Starlette/FastAPI request lifecycle events into a Collector."""

    IGNORED_PATHS = {"/docs", "/redoc", "/openapi.json", "/healthz"}

    def __init__(self, app, collector: Collector, session_cookie: Optional[str] = "session"):
        super().__init__(app)
        self.collector = collector
        self.session_cookie = session_cookie

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.IGNORED_PATHS:
            return await call_next(request)

        ctx = self.collector.on_request_start(
            method=request.method,
            url=str(request.url),
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            host=request.headers.get("host"),
            session_id=request.cookies.get(self.session_cookie) if self.session_cookie else None,
            request_token=request.headers.get(REQUEST_ID_HEADER),
        )
        request.state.apm = ctx

        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            self.collector.on_error(ctx, str(e), type(e).__name__, traceback.format_exc())
            await run_in_threadpool(
                self.collector.on_response_sent, ctx, 500, 0, time.perf_counter() - start_time
            )
            raise

        elapsed = time.perf_counter() - start_time
        route = request.scope.get("route")
        if route is not None and getattr(route, "path", None):
            self.collector.on_route_executed(ctx, route.path, elapsed)

        content_length = response.headers.get("content-length")
        await run_in_threadpool(
            self.collector.on_response_sent,
            ctx,
            response.status_code,
            int(content_length) if content_length else None,
            elapsed,
        )
        if ctx is not None:
            response.headers[REQUEST_ID_HEADER] = ctx.request_token
        return response
