from fastapi import Request

from pyminerfleet.manager import FleetManager


def get_manager(request: Request) -> FleetManager:
    """FastAPI dependency returning the manager built by the app lifespan."""
    return request.app.state.manager
