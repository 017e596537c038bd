"""Lexis MCP Server -- stdio-based MCP server over one Engine."""

import asyncio
import collections
import logging
import os
import sys
import time

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from lexis.config import EngineConfig, log_level_from_env
from lexis.engine import Engine
from lexis.server.handlers import WRITE_TOOLS, build_handlers
from lexis.server.tool_schemas import TOOL_SCHEMAS

logger = logging.getLogger("lexis.server")

SERVER_NAME = "lexis"

# ---------------------------------------------------------------------------
# Rate limiting -- sliding-window counters
# ---------------------------------------------------------------------------
_GLOBAL_RATE_LIMIT = int(os.environ.get("LEXIS_RATE_LIMIT_GLOBAL", "300"))  # per minute
_WRITE_RATE_LIMIT = int(os.environ.get("LEXIS_RATE_LIMIT_WRITE", "60"))  # per minute
_RATE_WINDOW_S = 60.0


class ToolRateLimiter:
    """Two-tier sliding window: every call counts globally, write tools also count separately."""

    def __init__(self, global_limit: int = _GLOBAL_RATE_LIMIT, write_limit: int = _WRITE_RATE_LIMIT,
                 window_s: float = _RATE_WINDOW_S, clock=time.monotonic):
        self.global_limit = global_limit
        self.write_limit = write_limit
        self.window_s = window_s
        self._clock = clock
        self._global: collections.deque = collections.deque()
        self._write: collections.deque = collections.deque()

    def check(self, tool_name: str) -> str | None:
        """Return an error message if a limit is exceeded, else record the call and return None."""
        now = self._clock()
        cutoff = now - self.window_s

        while self._global and self._global[0] < cutoff:
            self._global.popleft()
        if len(self._global) >= self.global_limit:
            return f"Rate limit exceeded: {self.global_limit} calls/min globally. Try again shortly."
        self._global.append(now)

        if tool_name in WRITE_TOOLS:
            while self._write and self._write[0] < cutoff:
                self._write.popleft()
            if len(self._write) >= self.write_limit:
                return f"Rate limit exceeded: {self.write_limit} write calls/min. Try again shortly."
            self._write.append(now)

        return None


def create_server(engine: Engine, limiter: ToolRateLimiter | None = None) -> Server:
    """Build an MCP Server whose tools operate on engine."""
    server = Server(SERVER_NAME)
    handlers = build_handlers(engine)
    limiter = limiter or ToolRateLimiter()

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return all Lexis tools."""
        return [
            Tool(
                name=schema["name"],
                description=schema["description"],
                inputSchema=schema["inputSchema"],
            )
            for schema in TOOL_SCHEMAS
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict) -> list[TextContent]:
        """Dispatch tool call to the appropriate handler."""
        rate_err = limiter.check(name)
        if rate_err:
            return [TextContent(type="text", text=rate_err)]

        handler = handlers.get(name)
        if not handler:
            return [TextContent(type="text", text=f"Unknown tool: {name}")]

        try:
            result = await handler(arguments or {})
            content_list = result.get("content", [{}])
            text = content_list[0].get("text", str(result)) if content_list else str(result)
            return [TextContent(type="text", text=text)]
        except Exception as e:
            logger.error("Tool %s failed: %s", name, e)
            return [TextContent(type="text", text=f"Error in {name}: {e}")]

    return server


async def main():
    """Entry point for the Lexis MCP server."""
    logging.basicConfig(level=log_level_from_env(), stream=sys.stderr)
    logger.info("Starting Lexis MCP server...")

    engine = Engine(EngineConfig.from_env())
    await engine.start()
    engine.start_maintenance()
    server = create_server(engine)

    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:
        await engine.aclose()


if __name__ == "__main__":
    asyncio.run(main())
