"""
Crayon Cost MCP Server - Model Context Protocol server for the Crayon cost API.

This package provides an MCP server that exposes Crayon billing, subscription
and usage data, plus cost trend, anomaly and tag allocation analytics, to AI
assistants.
"""

__version__ = "0.1.0"

from .circuit_breaker import CircuitBreaker, CircuitState
from .crayon_client import CrayonClient

# The `server` submodule is not re-exported: binding its `Server` instance to
# the package attribute would shadow the module itself.
__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CrayonClient",
]
