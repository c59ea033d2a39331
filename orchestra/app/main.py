"""Read-only FastAPI status app for the orchestrator."""

import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from .config import Settings, settings
from .context import OrchestratorContext, build_context
from orchestra.queue.models import MissionStatus

# Configure logging
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ContextFactory = Callable[[Settings], Awaitable[OrchestratorContext]]


def create_app(
    context_factory: Optional[ContextFactory] = None,
    app_settings: Optional[Settings] = None
) -> FastAPI:
    """
    Build the status API.

    Args:
        context_factory: Coroutine building the orchestrator context (default: build_context)
        app_settings: Settings passed to the factory (default: global settings)

    Returns:
        FastAPI app whose lifespan owns the context
    """
    factory = context_factory or build_context
    config = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown."""
        logger.info("Starting orchestra status API")
        app.state.context = await factory(config)
        logger.info("Orchestrator context initialized")

        yield

        logger.info("Shutting down orchestra status API")
        await app.state.context.shutdown()

    app = FastAPI(
        title="Orchestra Status API",
        description="Read-only view of missions, agents and worktrees",
        version="0.1.0",
        debug=config.debug,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    def get_context(request: Request) -> OrchestratorContext:
        return request.app.state.context

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Orchestra Status API",
            "version": "0.1.0",
            "status": "running"
        }

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint."""
        context = get_context(request)
        return {
            "status": "healthy",
            "queue": context.queue.get_metrics(),
            "agents": len(context.spawner.get_all_agents()),
            "event_subscribers": context.pty_manager.events.subscriber_count(),
            "tmux_supported": context.pty_manager.is_supported(),
        }

    @app.get("/missions")
    async def list_missions(request: Request, status: Optional[MissionStatus] = None):
        """Missions held by the queue, optionally filtered by status."""
        queue = get_context(request).queue
        missions = queue.get_by_status(status) if status else queue.get_all_missions()
        return [m.model_dump(mode="json") for m in missions]

    @app.get("/missions/{mission_id}")
    async def get_mission(request: Request, mission_id: str):
        """Single mission; falls back to the store for evicted missions."""
        context = get_context(request)
        mission = context.queue.get_mission(mission_id) or await context.store.get(mission_id)
        if mission is None:
            raise HTTPException(status_code=404, detail=f"Mission {mission_id} not found")
        return mission.model_dump(mode="json")

    @app.get("/agents")
    async def list_agents(request: Request):
        """Agents with their process handles."""
        spawner = get_context(request).spawner
        return [
            spawner.get_agent(agent.id).model_dump(mode="json")
            for agent in spawner.get_all_agents()
        ]

    @app.get("/worktrees")
    async def list_worktrees(request: Request):
        """Worktree bookkeeping next to git's own list, plus where they disagree."""
        manager = get_context(request).worktree_manager
        if manager is None:
            return {"enabled": False, "tracked": [], "git": [], "divergence": {}}

        return {
            "enabled": True,
            "tracked": [w.model_dump(mode="json") for w in manager.get_all_worktrees()],
            "git": await manager.list_all_git_worktrees(),
            "divergence": await manager.find_divergence(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
