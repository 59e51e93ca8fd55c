"""HTTP and MCP surfaces of the authorization broker."""

from .main import create_server, main

__all__ = ["create_server", "main"]
