"""flow-orchestrator MCP server."""

from mcp.server.fastmcp import FastMCP

from .config import get_config
from .tools import register_all_tools

mcp = FastMCP("flow-orchestrator")
config = get_config()
register_all_tools(mcp, config)
