"""agentwatch FastAPI service: main application entry point."""
from __future__ import annotations

import argparse
import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agentwatch import config
from agentwatch.notifications import NotificationHub
from agentwatch.observability import initialize as initialize_observability, shutdown as shutdown_observability
from agentwatch.routers.sessions import sessions_router
from agentwatch.routers.ws import ws_router
from agentwatch.session_registry import SessionRegistry

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("agentwatch")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("agentwatch starting up")
    initialize_observability(app)

    hub = NotificationHub()
    registry = SessionRegistry(hub)
    app.state.notification_hub = hub
    app.state.session_registry = registry
    registry.start()

    yield

    logger.info("agentwatch shutting down")
    await registry.stop()
    shutdown_observability(app)


app = FastAPI(
    title="agentwatch API",
    description="Live activity of AI coding-agent sessions, derived from their transcripts",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for the rendering client dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(ws_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    hub = getattr(app.state, "notification_hub", None)
    registry = getattr(app.state, "session_registry", None)
    return {
        "status": "ok",
        "sessions": len(registry.list_sessions()) if registry else 0,
        "clients": hub.subscriber_count if hub else 0,
        "workspace": registry.workspace_path if registry else config.WORKSPACE_PATH,
    }


def run(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Serve live agent session activity over HTTP and WebSocket.")
    parser.add_argument("--host", default=config.HOST)
    parser.add_argument("--port", type=int, default=config.PORT)
    parser.add_argument(
        "--workspace",
        default=config.WORKSPACE_PATH,
        help="Workspace whose sessions are auto-discovered (default: current directory).",
    )
    args = parser.parse_args(argv)

    config.WORKSPACE_PATH = os.path.abspath(args.workspace)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    run()
