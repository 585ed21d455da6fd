"""FastAPI app factory + lifespan (startup/shutdown)."""

import os
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent.mcp_client import close_mcp_pool, get_mcp_pool
from . import routes


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    # Startup
    routes._start_time = time.time()
    routes._thread_pool = ThreadPoolExecutor(max_workers=8)

    # Connect tool servers off the event loop; one bad server only logs
    await routes._run_in_pool(get_mcp_pool)

    yield

    # Shutdown
    close_mcp_pool()
    routes._thread_pool.shutdown(wait=False)


def create_app() -> FastAPI:
    """Build and return the configured FastAPI application."""
    app = FastAPI(
        title="EDA Chat API",
        description="Conversational exploratory data analysis over MCP tool servers",
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
    )

    app.include_router(routes.router)
    return app
