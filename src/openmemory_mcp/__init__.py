"""OpenMemory MCP: a dual-backend memory consistency engine served over MCP."""

__version__ = "0.1.0"
