"""
Hosted MCP service (Streamable HTTP transport).

Runs the same tool core as the stdio server behind a bearer-token gate, with
per-address and per-credential rate limits and a request size cap.
"""

from __future__ import annotations

import hashlib
import importlib
from contextlib import asynccontextmanager
from functools import partial
from typing import Any

import anyio
from mcp.server.streamable_http import StreamableHTTPServerTransport
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from .audit import configure_logging, log, log_security_event
from .config import Settings
from .dispatcher import ToolKind
from .errors import AuthenticationError, CrayonMCPError
from .server import server

server_module = importlib.import_module("crayon_cost_mcp.server")

GLOBAL_RATE_LIMIT = "1000/15minutes"
CREDENTIAL_RATE_LIMIT = "100/15minutes"
MAX_BODY_BYTES = 1024 * 1024

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'",
    "X-Permitted-Cross-Domain-Policies": "none",
}


def _secure(response: Response) -> Response:
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    return response


def _credential_key(request: Request) -> str:
    """
    Identify the caller for the per-user limit.

    Bearer credentials are bucketed by digest so the token itself never reaches
    the limiter storage. Requests without one fall back to the client address.
    """
    authorization = request.headers.get("authorization")
    if authorization:
        return "credential:" + hashlib.sha256(authorization.encode()).hexdigest()
    return "address:" + get_remote_address(request)


def _auth_disabled() -> bool:
    controls = server_module.access_control
    return controls is not None and not controls.auth_enabled


limiter = Limiter(key_func=get_remote_address)


async def rate_limited(request: Request, exc: RateLimitExceeded) -> Response:
    log_security_event(
        "rate_limited",
        None,
        {"path": request.url.path, "limit": str(exc.detail), "client": get_remote_address(request)},
    )
    return _secure(JSONResponse({"error": "Too many requests"}, status_code=429))


@asynccontextmanager
async def lifespan(app: Starlette):
    """Initialize the tool core and expose it over the HTTP transport."""
    settings = app.state.settings or Settings.from_env()
    server_module.init_runtime(settings)

    transport = StreamableHTTPServerTransport(
        mcp_session_id=None,
        is_json_response_enabled=True,
    )
    app.state.transport = transport

    try:
        async with transport.connect() as (read_stream, write_stream):
            async with anyio.create_task_group() as task_group:
                task_group.start_soon(
                    partial(server.run, stateless=True),
                    read_stream,
                    write_stream,
                    server.create_initialization_options(),
                )
                yield
                task_group.cancel_scope.cancel()
    finally:
        await server_module.shutdown_runtime()


async def health(_: Request) -> Response:
    """Health check endpoint for hosted deployment."""
    return _secure(
        JSONResponse(
            {
                "status": "healthy",
                "server": server.name,
                "transport": "streamable-http",
                "tools": len(ToolKind),
            }
        )
    )


def _authorization_from_scope(scope: Any) -> str | None:
    headers = {
        k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])
    }
    return headers.get("authorization")


async def mcp_asgi(scope, receive, send) -> None:
    """ASGI mount for Streamable HTTP MCP transport."""
    if scope.get("method") == "POST":
        controls = server_module.access_control
        try:
            if controls is None:
                raise AuthenticationError("Server not initialized")
            controls.authenticate(_authorization_from_scope(scope))
        except AuthenticationError:
            response = _secure(JSONResponse({"error": "Unauthorized"}, status_code=401))
            await response(scope, receive, send)
            return

    await scope["app"].state.transport.handle_request(scope, receive, send)


async def _read_capped_body(request: Request) -> bytes | None:
    """Request body, or None once it grows past MAX_BODY_BYTES."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > MAX_BODY_BYTES:
        return None

    chunks: list[bytes] = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > MAX_BODY_BYTES:
            return None
        chunks.append(chunk)
    return b"".join(chunks)


def _replay(body: bytes, receive):
    """ASGI receive that yields an already-read body, then defers to the real channel."""
    pending = True

    async def replay_receive() -> dict[str, Any]:
        nonlocal pending
        if pending:
            pending = False
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay_receive


async def _invoke_asgi_as_response(request: Request, receive) -> Response:
    """Invoke ASGI MCP transport and adapt output to a Starlette Response."""
    events: list[dict[str, Any]] = []

    async def send(message: dict[str, Any]) -> None:
        events.append(message)

    await mcp_asgi(request.scope, receive, send)

    start = next((event for event in events if event.get("type") == "http.response.start"), None)
    body_events = [event for event in events if event.get("type") == "http.response.body"]
    status_code = int(start.get("status", 500)) if start else 500
    raw_headers = start.get("headers", []) if start else []
    headers = {k.decode("latin-1"): v.decode("latin-1") for k, v in raw_headers}
    body = b"".join(event.get("body", b"") for event in body_events)

    return Response(content=body, status_code=status_code, headers=headers)


@limiter.limit(GLOBAL_RATE_LIMIT)
@limiter.limit(CREDENTIAL_RATE_LIMIT, key_func=_credential_key, exempt_when=_auth_disabled)
async def mcp_route(request: Request) -> Response:
    """Request-style route wrapper for the MCP ASGI transport."""
    receive = request.receive
    if request.method == "POST":
        body = await _read_capped_body(request)
        if body is None:
            log.warning("request_too_large", path=request.url.path, limit_bytes=MAX_BODY_BYTES)
            return _secure(JSONResponse({"error": "Payload too large"}, status_code=413))
        receive = _replay(body, request.receive)

    return _secure(await _invoke_asgi_as_response(request, receive))


def create_app(settings: Settings | None = None) -> Starlette:
    """
    Build the hosted app.

    Args:
        settings: Fixed settings; read from the environment at startup when omitted
    """
    application = Starlette(
        routes=[
            Route("/health", endpoint=health, methods=["GET"]),
            # Register both variants explicitly to avoid framework-level slash redirects.
            Route("/mcp", endpoint=mcp_route, methods=["GET", "POST", "DELETE"]),
            Route("/mcp/", endpoint=mcp_route, methods=["GET", "POST", "DELETE"]),
        ],
        exception_handlers={RateLimitExceeded: rate_limited},
        lifespan=lifespan,
    )
    application.router.redirect_slashes = False
    application.state.settings = settings
    application.state.limiter = limiter
    return application


app = create_app()


def main() -> None:
    """Run hosted MCP service."""
    import uvicorn

    try:
        settings = Settings.from_env()
    except CrayonMCPError as e:
        configure_logging()
        log.error("startup_failed", error=str(e))
        raise SystemExit(1) from e

    uvicorn.run("crayon_cost_mcp.hosted:app", host=settings.host, port=settings.port, lifespan="on")
