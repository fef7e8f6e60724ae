"""HTTP-Transport: FastAPI-App unter einem Basis-Pfad (Default /mcp).

Endpunkte:
  GET  {base}/health         → Health-Report (503 wenn unhealthy)
  GET  {base}/info           → Name, Version, Transports, Capabilities
  POST {base}/rpc            → JSON-RPC 2.0 (Einzel oder Batch)
  GET  {base}/tools          → Handler-Deskriptoren
  POST {base}/tools/{name}   → Direktaufruf mit JSON-Body als Parameter
  GET  {base}/metrics        → Prometheus-Text
  GET  {base}/metrics.json   → JSON-Export (?history=true)

Pro Request, in dieser Reihenfolge:
  1. Request-Kontext (X-Request-ID übernehmen oder erzeugen)
  2. Authentifizierung (Health ausgenommen)
  3. Rate-Limiting (Client + Route)
  4. Route-Handler mit Timeout (504)

Gestartet wird über uvicorn.Server; close() setzt should_exit und wartet
auf das Ende des Serve-Tasks.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from toolhost.config import ServerConfig
from toolhost.core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    NotFoundError,
    RateLimitError,
    ToolhostError,
    ValidationError,
)
from toolhost.core.server import ServerCore
from toolhost.gateway.auth import Authenticator, SessionStore
from toolhost.mcp.rpc import (
    INVALID_REQUEST,
    PARSE_ERROR,
    RpcDispatcher,
    is_valid_envelope,
    rpc_error,
)
from toolhost.models import HealthStatus
from toolhost.security.rate_limiter import RateLimiter
from toolhost.telemetry.instrumentation import HttpMetrics
from toolhost.utils.logging import bind_context, clear_context, get_logger

log = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
STARTUP_TIMEOUT_S = 10.0
SHUTDOWN_TIMEOUT_S = 3.0


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _error_body(title: str, message: str, request_id: str = "", **extra: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "error": title,
        "message": message,
        "timestamp": _now_iso(),
    }
    if request_id:
        body["requestId"] = request_id
    body.update(extra)
    return body


_ERROR_TITLES: dict[type[ToolhostError], str] = {
    AuthenticationError: "Unauthorized",
    AuthorizationError: "Forbidden",
    RateLimitError: "Too Many Requests",
    ValidationError: "Invalid Parameters",
    NotFoundError: "Not Found",
}


class HttpTransport:
    """HTTP/JSON-RPC-Transport über FastAPI + uvicorn."""

    def __init__(
        self,
        server: ServerCore,
        *,
        config: ServerConfig | None = None,
        dispatcher: RpcDispatcher | None = None,
        sessions: SessionStore | None = None,
        authenticator: Authenticator | None = None,
        rate_limiter: RateLimiter | None = None,
        info_provider: Callable[[], dict[str, Any]] | None = None,
    ) -> None:
        self._server = server
        self._config = config or server.config
        self._session_id = f"http_{uuid.uuid4().hex}"
        self._info_provider = info_provider
        self._dispatcher = dispatcher or RpcDispatcher(
            server,
            info_provider=self.info,
            max_batch_size=self._config.performance.max_batch_size,
        )
        self._sessions = sessions or SessionStore(
            access_token_ttl_s=self._config.session.access_token_ttl_s,
            refresh_token_ttl_s=self._config.session.refresh_token_ttl_s,
        )
        self._authenticator = authenticator or Authenticator(
            self._config.security.auth, self._sessions,
        )
        rl = self._config.security.rate_limiting
        if rate_limiter is not None:
            self._rate_limiter: RateLimiter | None = rate_limiter
        elif rl.enabled:
            self._rate_limiter = RateLimiter(rl.max_requests, rl.window_ms, message=rl.message)
        else:
            self._rate_limiter = None
        self._http_metrics = HttpMetrics(server.metrics)

        self._app: FastAPI | None = None
        self._uvicorn: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None

    # ── Properties ───────────────────────────────────────────────

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def base_path(self) -> str:
        return self._config.http.base_path

    @property
    def host(self) -> str:
        return self._config.host

    @property
    def port(self) -> int:
        return self._config.port

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    @property
    def app(self) -> FastAPI:
        """FastAPI-App-Instanz (für Tests und Embedding)."""
        if self._app is None:
            self._app = self._create_app()
        return self._app

    def info(self) -> dict[str, Any]:
        if self._info_provider is not None:
            info = dict(self._info_provider())
        else:
            info = {"transports": ["http"]}
        return {
            "name": self._config.name,
            "version": self._config.version,
            "description": self._config.description,
            "protocol": "mcp",
            "transport": "http",
            "sessionId": self._session_id,
            "capabilities": ["tools", "rpc", "health", "metrics"],
            **info,
        }

    def endpoints(self) -> dict[str, str]:
        base = f"http://{self.host}:{self.port}{self.base_path}"
        return {
            "health": f"{base}/health",
            "info": f"{base}/info",
            "rpc": f"{base}/rpc",
            "tools": f"{base}/tools",
            "metrics": f"{base}/metrics",
        }

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Startet uvicorn und wartet, bis der Socket lauscht."""
        if self.is_running:
            raise ConfigurationError("HTTP transport already started")

        uvi_config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            lifespan="off",
            access_log=False,
        )
        self._uvicorn = uvicorn.Server(uvi_config)
        self._serve_task = asyncio.create_task(self._serve(self._uvicorn), name="http-transport")

        deadline = time.monotonic() + STARTUP_TIMEOUT_S
        while not self._uvicorn.started:
            if self._serve_task.done() or time.monotonic() > deadline:
                await self._abort_start()
                raise ConfigurationError(
                    f"HTTP transport failed to listen on {self.host}:{self.port}",
                    details={"host": self.host, "port": self.port},
                )
            await asyncio.sleep(0.05)

        log.info("http_transport_started", host=self.host, port=self.port,
                 base_path=self.base_path, session_id=self._session_id)

    @staticmethod
    async def _serve(server: uvicorn.Server) -> None:
        # uvicorn beendet sich bei Bind-Fehlern per sys.exit(1)
        try:
            await server.serve()
        except SystemExit as exc:
            log.error("http_transport_serve_failed", exit_code=exc.code)

    async def _abort_start(self) -> None:
        task, self._serve_task = self._serve_task, None
        self._uvicorn = None
        if task is None:
            return
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            log.debug("http_transport_start_aborted")

    async def wait_closed(self) -> None:
        """Wartet, bis uvicorn beendet ist (z.B. nach SIGINT)."""
        if self._serve_task is not None:
            await asyncio.shield(self._serve_task)

    async def close(self) -> None:
        """Nimmt keine neuen Verbindungen mehr an und schließt den Listener."""
        if self._uvicorn is None or self._serve_task is None:
            return
        self._uvicorn.should_exit = True
        task, self._serve_task = self._serve_task, None
        try:
            await asyncio.wait_for(task, timeout=SHUTDOWN_TIMEOUT_S)
        except asyncio.TimeoutError:
            log.warning("http_transport_forced_shutdown")
            self._uvicorn.force_exit = True
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        finally:
            self._uvicorn = None
        log.info("http_transport_closed", session_id=self._session_id)

    # ── App ──────────────────────────────────────────────────────

    def _create_app(self) -> FastAPI:
        """Erstellt die FastAPI-Applikation mit Middleware und Routen."""
        app = FastAPI(
            title=self._config.name,
            version=self._config.version,
            description=self._config.description,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )

        app.middleware("http")(self._request_pipeline)

        cors = self._config.security.cors
        if cors.enabled:
            app.add_middleware(
                CORSMiddleware,
                allow_origins=cors.origins,
                allow_methods=cors.methods,
                allow_headers=cors.allowed_headers,
                expose_headers=[REQUEST_ID_HEADER],
            )

        @app.exception_handler(StarletteHTTPException)
        async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
            request_id = getattr(request.state, "request_id", "")
            if exc.status_code == 404:
                body = _error_body(
                    "Not Found",
                    f"Route {request.method} {request.url.path} not found",
                    request_id,
                )
            else:
                body = _error_body("HTTP Error", str(exc.detail), request_id)
            return JSONResponse(body, status_code=exc.status_code)

        app.include_router(self._create_router(), prefix=self.base_path)
        return app

    def _create_router(self) -> APIRouter:
        router = APIRouter()
        server = self._server

        @router.get("/health")
        async def health() -> JSONResponse:
            report = await server.get_health()
            body = {**report.to_dict(), "sessionId": self._session_id}
            status = 503 if report.status is HealthStatus.UNHEALTHY else 200
            return JSONResponse(body, status_code=status)

        @router.get("/info")
        async def info() -> dict[str, Any]:
            return self.info()

        @router.post("/rpc")
        async def rpc(request: Request) -> Response:
            try:
                payload = json.loads(await request.body())
            except (json.JSONDecodeError, UnicodeDecodeError):
                return JSONResponse(rpc_error(PARSE_ERROR, "Parse error"), status_code=400)

            if not isinstance(payload, list) and not is_valid_envelope(payload):
                return JSONResponse(
                    rpc_error(INVALID_REQUEST, "Invalid Request",
                              payload.get("id") if isinstance(payload, dict) else None),
                    status_code=400,
                )

            response = await self._dispatcher.handle_payload(
                payload, request_id=request.state.request_id,
            )
            if response is None:
                return Response(status_code=202)
            return JSONResponse(response)

        @router.get("/tools")
        async def list_tools() -> dict[str, Any]:
            tools = [h.to_descriptor() for h in server.list_handlers()]
            return {"tools": tools, "count": len(tools)}

        @router.post("/tools/{name}")
        async def call_tool(name: str, request: Request) -> JSONResponse:
            raw = await request.body()
            try:
                params = json.loads(raw) if raw.strip() else {}
            except (json.JSONDecodeError, UnicodeDecodeError):
                return JSONResponse(
                    _error_body("Invalid JSON", "Request body is not valid JSON",
                                request.state.request_id),
                    status_code=400,
                )

            try:
                result = await server.invoke(name, params, request_id=request.state.request_id)
            except NotFoundError as exc:
                return JSONResponse(
                    _error_body("Tool Not Found", exc.message, request.state.request_id,
                                availableTools=sorted(server.handlers)),
                    status_code=404,
                )
            except ValidationError as exc:
                return JSONResponse(
                    _error_body("Invalid Parameters", exc.message, request.state.request_id,
                                details=exc.details),
                    status_code=400,
                )

            if not result.success:
                return JSONResponse(
                    _error_body("Tool Execution Failed", result.error or "",
                                request.state.request_id, code=result.error_code),
                    status_code=500,
                )
            return JSONResponse(result.to_dict())

        @router.get("/metrics")
        async def metrics() -> PlainTextResponse:
            return PlainTextResponse(
                server.metrics.export_prometheus() + "\n",
                media_type="text/plain; version=0.0.4",
            )

        @router.get("/metrics.json")
        async def metrics_json(history: bool = False) -> dict[str, Any]:
            return server.metrics.export_json(include_history=history)

        return router

    # ── Middleware ───────────────────────────────────────────────

    async def _request_pipeline(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        # 1. Request-Kontext
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        request.state.received_at = _now_iso()
        start = time.monotonic()
        bind_context(request_id=request_id)

        route = request.url.path
        try:
            response = await self._guarded(request, call_next, route)
        finally:
            clear_context()

        response.headers[REQUEST_ID_HEADER] = request_id
        duration_ms = (time.monotonic() - start) * 1000
        self._http_metrics.record_request(request.method, route, response.status_code, duration_ms)
        return response

    async def _guarded(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
        route: str,
    ) -> Response:
        request_id = request.state.request_id
        if request.method == "OPTIONS":
            return await call_next(request)

        # 2. Authentifizierung
        auth = None
        try:
            if not self._authenticator.is_exempt(route, self.base_path):
                auth = self._authenticator.authenticate(request.headers)
        except (AuthenticationError, AuthorizationError) as exc:
            log.info("http_auth_failed", route=route, reason=exc.error_code)
            return self._error_response(exc, request_id)
        request.state.auth = auth

        # 3. Rate-Limiting
        if self._rate_limiter is not None:
            if auth is not None and not auth.is_anonymous:
                client_id = auth.client_id
            else:
                client_id = request.client.host if request.client else "unknown"
            try:
                decision = self._rate_limiter.check(client_id, route)
            except RateLimitError as exc:
                response = self._error_response(exc, request_id)
                response.headers["Retry-After"] = str(exc.retry_after)
                response.headers["X-RateLimit-Limit"] = str(self._rate_limiter.max_requests)
                response.headers["X-RateLimit-Remaining"] = "0"
                return response
        else:
            decision = None

        # 4. Route mit Timeout
        timeout_s = self._config.performance.timeout_ms / 1000
        try:
            response = await asyncio.wait_for(call_next(request), timeout=timeout_s)
        except asyncio.TimeoutError:
            log.warning("http_request_timeout", route=route, timeout_ms=self._config.performance.timeout_ms)
            return JSONResponse(
                _error_body("Gateway Timeout",
                            f"Request exceeded {self._config.performance.timeout_ms} ms",
                            request_id),
                status_code=504,
            )

        if decision is not None:
            response.headers["X-RateLimit-Limit"] = str(decision.limit)
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
            response.headers["X-RateLimit-Reset"] = str(decision.reset_time // 1000)
        return response

    @staticmethod
    def _error_response(exc: ToolhostError, request_id: str) -> JSONResponse:
        title = _ERROR_TITLES.get(type(exc), "Error")
        return JSONResponse(
            _error_body(title, exc.message, request_id, code=exc.error_code),
            status_code=exc.http_status,
        )
