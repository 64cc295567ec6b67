"""FastAPI dependencies for request handling.

Everything here reads objects created by the application lifespan from
``app.state``; routes never construct services themselves.
"""

from fastapi import Request

from hakumint.services.minting.coordinator import MintCoordinator
from hakumint.services.minting.state_machine import MintStateMachine


def get_state_machine(request: Request) -> MintStateMachine:
    return request.app.state.state_machine


def get_coordinator(request: Request) -> MintCoordinator:
    """Get the mint coordinator wired in the application lifespan."""
    return request.app.state.coordinator
