"""EnvOps Orchestrator API: FastAPI entry point."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routers import branches, environments, health
from .services.orchestrator_service import get_agent

logging.basicConfig(
    level=os.getenv("ENVOPS_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("envops.app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("EnvOps app starting up")
    agent = app.dependency_overrides.get(get_agent, get_agent)()
    resumed = agent.submit_resume()
    yield
    logger.info("EnvOps app shutting down")
    resumed.cancel()
    await agent.shutdown()


app = FastAPI(
    title="EnvOps Orchestrator",
    description="Per-branch ephemeral database environments",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(branches.router)
app.include_router(environments.router)


@app.get("/")
async def root():
    """Service index."""
    return {
        "status": "ok",
        "app": "EnvOps Orchestrator",
        "endpoints": [
            "/api/health",
            "/api/branches/events",
            "/api/branches/github",
            "/api/environments",
            "/api/environments/{environment_id}",
        ],
    }
