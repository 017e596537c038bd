"""Lexis MCP server: tool schemas, per-engine handlers, stdio and HTTP transports."""
