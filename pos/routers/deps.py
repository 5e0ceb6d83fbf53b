"""Shared dependencies for the register routers."""
from fastapi import HTTPException, Request

from pos.terminal import RegisterTerminal


def get_terminal(request: Request) -> RegisterTerminal:
    """Terminal created at app startup."""
    terminal = getattr(request.app.state, "terminal", None)
    if terminal is None:
        raise HTTPException(status_code=503, detail="Register is not ready")
    return terminal
