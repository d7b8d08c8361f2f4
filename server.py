"""
ReadyTx-EVM canonical entrypoint.

This is the single source of truth for:
- MCP server name
- tool registration order
"""

from __future__ import annotations

from fastmcp import FastMCP

from app.core.settings import settings
from app.tools.tx import register_tx_tools
from observability import configure_logging

configure_logging(settings.READYTX_LOG_LEVEL)

# Initialize FastMCP server
mcp = FastMCP("ReadyTx-EVM")

# Register Tools
register_tx_tools(mcp)


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
