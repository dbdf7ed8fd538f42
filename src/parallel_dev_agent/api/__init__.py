"""HTTP and WebSocket API for the Parallel Dev Agent."""

from .main import create_app, run_server

__all__ = ["create_app", "run_server"]
