"""API route modules."""

from fastapi import Request

from ...orchestration.services import AgentServices


def get_services(request: Request) -> AgentServices:
    """Get the component graph from app state."""
    return request.app.state.services
