"""Lexis HTTP Server -- Streamable HTTP transport for the MCP server.

Wraps the MCP server in a Starlette ASGI app using the MCP SDK's
StreamableHTTPSessionManager, plus a health check and a discovery card.
"""

import contextlib
import logging
import secrets
from collections.abc import AsyncIterator
from pathlib import Path

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from mcp.server.streamable_http_manager import StreamableHTTPSessionManager

from lexis import __version__
from lexis.config import lexis_home
from lexis.server.tool_schemas import TOOL_SCHEMAS

logger = logging.getLogger("lexis.server.http")


def _api_key_path() -> Path:
    return lexis_home() / "api_key"


def get_or_create_api_key() -> str:
    """Load the API key from $LEXIS_HOME/api_key, or generate one."""
    path = _api_key_path()
    if path.exists():
        return path.read_text().strip()
    key = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(key + "\n")
    path.chmod(0o600)
    return key


def _key_matches(request: Request, api_key: str) -> bool:
    """Accept the key from the x-api-key header or an api_key query parameter."""
    provided = request.headers.get("x-api-key") or request.query_params.get("api_key") or ""
    return bool(provided) and secrets.compare_digest(provided.encode(), api_key.encode())


def create_http_app(server, api_key: str | None = None) -> Starlette:
    """Create a Starlette ASGI app wrapping the MCP server.

    Args:
        server: The MCP Server from ``create_server``.
        api_key: Optional API key for authentication. None disables auth.
    """
    session_manager = StreamableHTTPSessionManager(
        app=server,
        json_response=True,
        stateless=True,
    )

    async def mcp_asgi_app(scope: Scope, receive: Receive, send: Send) -> None:
        """ASGI app for the /mcp endpoint, delegating to StreamableHTTPSessionManager."""
        if api_key and not _key_matches(Request(scope, receive), api_key):
            await JSONResponse({"error": "Unauthorized"}, status_code=401)(scope, receive, send)
            return
        await session_manager.handle_request(scope, receive, send)

    async def health(request: Request):
        return JSONResponse({"status": "ok", "server": "lexis"})

    async def server_card(request: Request):
        return JSONResponse({
            "name": "lexis",
            "version": __version__,
            "description": "Knowledge acquisition engine: intent matching, tokenization and a learning store",
            "transports": [
                {"type": "streamable-http", "url": "/mcp"},
                {"type": "stdio", "command": "lexis serve"},
            ],
            "tools_count": len(TOOL_SCHEMAS),
        })

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            yield

    app = Starlette(
        routes=[
            Mount("/mcp", app=mcp_asgi_app),
            Route("/health", endpoint=health),
            Route("/.well-known/mcp.json", endpoint=server_card),
        ],
        lifespan=lifespan,
    )
    return app


async def run_http(host: str, port: int, api_key: str | None) -> None:
    """Start an Engine, wrap it in the HTTP app and run uvicorn until stopped."""
    import uvicorn

    from lexis.config import EngineConfig
    from lexis.engine import Engine
    from lexis.server.mcp_server import create_server

    engine = Engine(EngineConfig.from_env())
    await engine.start()
    engine.start_maintenance()
    try:
        app = create_http_app(create_server(engine), api_key=api_key)
        config = uvicorn.Config(app, host=host, port=port, log_level="info")
        srv = uvicorn.Server(config)
        logger.info("Serving Lexis on http://%s:%d/mcp", host, port)
        await srv.serve()
    finally:
        await engine.aclose()
