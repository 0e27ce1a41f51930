"""FastAPI app factory + lifespan (startup/shutdown)."""

import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pilot.runtime import PilotRuntime, build_runtime

from . import routes


def create_app(runtime: Optional[PilotRuntime] = None) -> FastAPI:
    """Build and return the configured FastAPI application.

    ``runtime`` is built from config at startup unless one is supplied.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown lifecycle."""
        rt = runtime or build_runtime()
        routes.runtime = rt
        routes._start_time = time.time()
        await rt.startup()

        yield

        await rt.shutdown()

    app = FastAPI(
        title="DeskPilot API",
        description="Drive a remote desktop from a textual instruction",
        version="0.1.0",
        lifespan=lifespan,
    )

    # CORS: restrict origins in production, allow all in development
    cors_origins = os.getenv("CORS_ORIGINS", "").strip()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins.split(",") if cors_origins else ["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[routes.CONVERSATION_HEADER],
    )

    app.include_router(routes.router)
    return app
