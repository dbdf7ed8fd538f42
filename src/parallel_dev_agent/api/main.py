"""FastAPI application for the orchestrator.

Provides REST endpoints for workspaces, environments, sessions and tasks
plus a WebSocket endpoint that streams every orchestrator notification.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..errors import AgentError, ConflictError, NotFoundError
from ..models import OrchestratorConfig
from ..orchestration.services import build_services
from .routes import sessions, tasks, workspaces
from .websocket import ConnectionManager, WebSocketNotifier, router as websocket_router

logger = logging.getLogger(__name__)


def create_app(config: Optional[OrchestratorConfig] = None) -> FastAPI:
    """Create the FastAPI application.

    Args:
        config: Orchestrator configuration (defaults to the environment settings)

    Returns:
        Configured FastAPI application
    """
    if config is None:
        from ..config import get_settings
        config = get_settings().to_config()

    connections = ConnectionManager()
    services = build_services(config, notifier=WebSocketNotifier(connections))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stopped = await services.sessions.stop_all_working_sessions()
        if stopped:
            logger.info(f"Recovered {stopped} sessions left in progress")
        yield
        await services.shutdown()

    app = FastAPI(
        title="Parallel Dev Agent API",
        description="Isolated agent sessions over git worktrees",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = services
    app.state.connections = connections

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def conflict(request: Request, exc: ConflictError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(AgentError)
    async def agent_error(request: Request, exc: AgentError):
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    app.include_router(sessions.router, prefix="/api", tags=["sessions"])
    app.include_router(tasks.router, prefix="/api", tags=["tasks"])
    app.include_router(workspaces.router, prefix="/api", tags=["workspaces"])
    app.include_router(websocket_router, prefix="/ws", tags=["websocket"])

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


def run_server(
    config: Optional[OrchestratorConfig] = None,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> None:
    """Run the API server.

    Args:
        config: Orchestrator configuration
        host: Host to bind to
        port: Port to listen on
    """
    import uvicorn

    app = create_app(config)
    uvicorn.run(app, host=host, port=port)
