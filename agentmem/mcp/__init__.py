from agentmem.mcp.server import (
    mcp,
    mcp_stream_app,
    service_tool,
)

__all__ = [
    "mcp",
    "mcp_stream_app",
    "service_tool",
]
