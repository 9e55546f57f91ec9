"""MCP server exposing isobuild tools.

This module implements the Model Context Protocol (MCP) server that
exposes recipe validation, Dockerfile rendering, pipeline runs and
artifact inspection to AI tools and external systems.

MCP tools:
- Are idempotent where applicable (runs reuse cached results)
- Return structured errors with codes
- Map directly to core services
"""

from mcp_server.server import mcp

__all__ = ["mcp"]
