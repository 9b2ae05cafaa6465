"""HTTP front: a reverse proxy whose GET traffic runs through the asset cache worker."""

from __future__ import annotations

import argparse
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from .config import Settings, get_settings
from .registration import Registration
from .stores import CachedResponse, CacheStorage, build_storage, replayable_headers
from .webhooks import build_webhook_router
from .worker import worker_from_settings

__all__ = ["build_http_app", "main"]

_LOGGING_CONFIGURED = False

_PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
# Recomputed by the upstream client for the origin it talks to.
_REQUEST_DROPPED_HEADERS = frozenset({"host", "content-length", "connection", "transfer-encoding"})


def _configure_logging(settings: Settings) -> None:
    """Initialize structlog and stdlib logging formatting."""
    # Idempotent setup
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
    ]
    if settings.log_json_enabled:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.processors.KeyValueRenderer(key_order=["event", "method", "path", "status"]))
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, settings.log_level.upper(), logging.INFO)),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    # Suppress verbose aiosqlite DEBUG logs (functools.partial cursor/operation noise)
    logging.getLogger("aiosqlite").setLevel(logging.INFO)
    # Suppress filelock DEBUG logs (lock acquire/release routine operations)
    logging.getLogger("filelock").setLevel(logging.INFO)
    # Per-request client lines duplicate the proxy's own request log
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _LOGGING_CONFIGURED = True


def _to_response(cached: CachedResponse) -> Response:
    return Response(
        content=cached.body,
        status_code=cached.status_code,
        headers=dict(cached.headers),
    )


def _upstream_url(origin: str, request: Request) -> str:
    url = f"{origin}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def build_http_app(
    settings: Settings,
    registration: Registration | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    storage: CacheStorage | None = None,
) -> FastAPI:
    """Assemble the proxy.

    ``registration``, ``client`` and ``storage`` may be injected; otherwise the
    lifespan builds them from ``settings`` and registers a worker for the
    manifest on disk.
    """
    _configure_logging(settings)
    registration = registration or Registration()
    owns_client = client is None
    upstream = client or httpx.AsyncClient(timeout=settings.http.upstream_timeout_seconds)
    origin = settings.cache.origin
    control = settings.http.control_path

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        log = structlog.get_logger("shellcache.http")
        if registration.controller is None:
            worker = worker_from_settings(
                settings.cache,
                storage=storage or build_storage(settings.cache),
                client=upstream,
            )
            await registration.register(worker)
        log.info(
            "startup",
            origin=origin,
            controller=registration.controller.version if registration.controller else None,
        )
        try:
            yield
        finally:
            await registration.drain()
            if owns_client:
                await upstream.aclose()

    app = FastAPI(lifespan=lifespan)
    app.state.registration = registration
    app.state.upstream = upstream

    if settings.http.request_log_enabled:

        class RequestLoggingMiddleware(BaseHTTPMiddleware):
            async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
                start = time.time()
                response = await call_next(request)
                structlog.get_logger("shellcache.http").info(
                    "request",
                    method=request.method,
                    path=request.url.path,
                    status=getattr(response, "status_code", 0),
                    duration_ms=int((time.time() - start) * 1000),
                    client_ip=request.client.host if request.client else "-",
                )
                return response

        app.add_middleware(RequestLoggingMiddleware)

    @app.get(f"{control}/health")
    async def health() -> JSONResponse:
        controller = registration.controller
        return JSONResponse(
            {
                "status": "alive",
                "controller": controller.version if controller else None,
                "state": controller.state.value if controller else None,
                "waiting": registration.waiting.version if registration.waiting else None,
            }
        )

    @app.post(f"{control}/message")
    async def message(request: Request) -> JSONResponse:
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse({"error": "Body must be JSON"}, status_code=status.HTTP_400_BAD_REQUEST)
        data = payload.get("data") if isinstance(payload, dict) else None
        return JSONResponse(await registration.post_message(data))

    if settings.webhook.enabled:
        app.include_router(build_webhook_router(settings.webhook))

    @app.api_route("/{path:path}", methods=_PROXY_METHODS)
    async def proxy(request: Request, path: str) -> Response:
        url = _upstream_url(origin, request)
        try:
            cached = await registration.handle_fetch(request.method, url)
        except httpx.TransportError as exc:
            structlog.get_logger("shellcache.http").warning("upstream_unreachable", path=request.url.path, error=str(exc))
            return JSONResponse({"error": "Upstream unreachable"}, status_code=status.HTTP_502_BAD_GATEWAY)
        if cached is not None:
            return _to_response(cached)
        headers = {k: v for k, v in request.headers.items() if k.lower() not in _REQUEST_DROPPED_HEADERS}
        try:
            upstream_response = await upstream.request(
                request.method,
                url,
                headers=headers,
                content=await request.body(),
            )
        except httpx.TransportError as exc:
            structlog.get_logger("shellcache.http").warning("upstream_unreachable", path=request.url.path, error=str(exc))
            return JSONResponse({"error": "Upstream unreachable"}, status_code=status.HTTP_502_BAD_GATEWAY)
        return Response(
            content=upstream_response.content,
            status_code=upstream_response.status_code,
            headers=replayable_headers(upstream_response.headers),
        )

    return app


def main() -> None:
    """Run the HTTP front using settings-specified host/port."""

    parser = argparse.ArgumentParser(description="Run the shellcache HTTP front")
    parser.add_argument("--host", help="Override HTTP host", default=None)
    parser.add_argument("--port", help="Override HTTP port", type=int, default=None)
    parser.add_argument("--log-level", help="Uvicorn log level", default="info")
    # Be tolerant of extraneous argv when invoked under test runners
    args, _unknown = parser.parse_known_args()

    settings = get_settings()
    host = args.host or settings.http.host
    port = args.port or settings.http.port

    app = build_http_app(settings)
    kwargs: dict[str, Any] = {"host": host, "port": port, "log_level": args.log_level}
    uvicorn.run(app, **kwargs)


if __name__ == "__main__":  # pragma: no cover - manual execution path
    main()
