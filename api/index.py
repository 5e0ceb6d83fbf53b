"""
Register POS - Main FastAPI Application

Single entry point for the register API.
"""
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pos.logging import get_logger
from pos.routers import register_router
from pos.terminal import RegisterTerminal, create_terminal

logger = get_logger(__name__)

ALLOWED_ORIGINS = [o for o in os.environ.get("POS_ALLOWED_ORIGINS", "").split(",") if o]


def create_app(terminal: Optional[RegisterTerminal] = None) -> FastAPI:
    """
    Build the application.

    Args:
        terminal: Pre-built terminal (tests); created from settings on startup otherwise
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "terminal", None) is None:
            app.state.terminal = await create_terminal()
            logger.info("Register terminal ready")
        yield
        app.state.terminal.close()

    app = FastAPI(
        title="Register POS API",
        description="Cart pricing, promotions and checkout for a single register",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.terminal = terminal

    if ALLOWED_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint"""
        return {"status": "ok"}

    app.include_router(register_router, prefix="/api")
    return app


app = create_app()
