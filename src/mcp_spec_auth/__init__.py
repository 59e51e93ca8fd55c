"""MCP authorization broker: OAuth 2.1 for MCP clients, brokered to an upstream identity provider."""

__version__ = "0.1.0"
