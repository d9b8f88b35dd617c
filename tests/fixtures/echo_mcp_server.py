#!/usr/bin/env python3
"""
Minimal stdio MCP server used by the process manager tests
"""

import os

from mcp.server.fastmcp import FastMCP

mcp = FastMCP("echo")


@mcp.tool()
def echo(text: str) -> str:
    """Return the given text unchanged"""
    return text


@mcp.tool()
def add(a: int, b: int) -> int:
    """Add two integers"""
    return a + b


@mcp.tool()
def crash() -> str:
    """Exit the server process without replying"""
    os._exit(1)


if __name__ == "__main__":
    mcp.run()
