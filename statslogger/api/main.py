from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import DownstreamError, InvalidPayload, SinkError, WriterClosedError
from ..core.logger import get_logger
from ..obs.metrics import Metrics
from ..obs.middleware import CorsMiddleware, RequestLoggingMiddleware
from ..services.events import Record, utcnow
from ..services.receiver import (
    build_csp_violation,
    build_event,
    build_pageview,
    build_submission,
    parse_json,
    read_fields,
    resolve_remote,
)
from ..services.sinks import Sink, make_sink
from ..services.writer import Writer

log = get_logger("api")


def _exit_process(exc: BaseException) -> None:
    # The sink is gone; records accepted from now on would be lost silently.
    log.critical("exiting after sink failure: %s", exc)
    os._exit(1)


def create_app(
    settings: Settings | None = None,
    *,
    sink: Sink | None = None,
    on_fatal: Callable[[BaseException], None] | None = None,
) -> FastAPI:
    """
    Build the app. The sink is opened (when not given) and the writer started
    on startup; on shutdown the writer drains and closes the sink.
    """
    settings = settings or default_settings
    metrics = Metrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        writer = Writer(
            sink or make_sink(settings),
            max_pending=settings.max_pending,
            on_fatal=on_fatal or _exit_process,
            metrics=metrics,
        )
        await writer.start()
        app.state.writer = writer
        try:
            yield
        finally:
            await writer.shutdown()

    app = FastAPI(title="statslogger", version="0.6.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.metrics = metrics

    app.add_middleware(CorsMiddleware, origins=settings.parsed_cors(), max_age=settings.cors_max_age)
    # Request logging middleware (observability)
    app.add_middleware(RequestLoggingMiddleware)

    @app.exception_handler(Exception)
    async def unhandled_exc(request: Request, exc: Exception):
        log.exception("unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"detail": "internal_error"})

    async def accept(request: Request, endpoint: str, record: Record) -> Response:
        writer: Writer = request.app.state.writer
        try:
            await writer.submit(record, wait=settings.write_through or writer.acknowledged)
        except InvalidPayload as e:
            return bad_request(request, e)
        except WriterClosedError:
            return JSONResponse(status_code=503, content={"detail": "not_accepting"})
        except DownstreamError as e:
            log.error("handler=%s forward: %s", request.url.path, e)
            return JSONResponse(status_code=502, content={"detail": "downstream_error"})
        except SinkError:
            return JSONResponse(status_code=500, content={"detail": "internal_error"})
        metrics.endpoint_hit.inc(endpoint)
        log.info(record.summary())
        return Response(status_code=204)

    def bad_request(request: Request, exc: InvalidPayload) -> Response:
        log.warning("handler=%s rejected: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    # ----------------- Endpoints -----------------
    @app.post("/form", status_code=204)
    @app.post("/api", status_code=204)
    async def form(request: Request):
        received, remote = utcnow(), resolve_remote(request)
        fields = await read_fields(request)
        return await accept(request, "form", build_event(fields, received=received, remote=remote))

    @app.post("/json", status_code=204)
    async def json_body(request: Request):
        received, remote = utcnow(), resolve_remote(request)
        try:
            payload = parse_json(await request.body())
        except InvalidPayload as e:
            return bad_request(request, e)
        return await accept(request, "json", build_submission(payload, received=received, remote=remote))

    @app.post("/csp", status_code=204)
    async def csp(request: Request):
        received, remote = utcnow(), resolve_remote(request)
        try:
            record = build_csp_violation(parse_json(await request.body()), received=received, remote=remote)
        except InvalidPayload as e:
            return bad_request(request, e)
        return await accept(request, "csp", record)

    @app.api_route("/beacon", methods=["GET", "POST"], status_code=204)
    async def beacon(request: Request):
        received, remote = utcnow(), resolve_remote(request)
        fields = await read_fields(request)
        try:
            record = build_pageview(fields, received=received, remote=remote)
        except InvalidPayload as e:
            return bad_request(request, e)
        return await accept(request, "beacon", record)

    @app.get("/health")
    async def health(request: Request):
        writer = getattr(request.app.state, "writer", None)
        return {"ok": True, "env": settings.app_env, "writer": writer.state.value if writer else None}

    @app.get("/metrics")
    async def metrics_text():
        return PlainTextResponse(metrics.render(), media_type="text/plain; version=0.0.4")

    @app.api_route("/", methods=["GET", "POST"])
    async def root():
        return RedirectResponse(settings.redirect_url, status_code=302)

    return app
