import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .config import Settings
from .errors import RiverConfigError, RiverError
from .logging_config import setup_logging
from .orchestrator import RiverOrchestrator
from .river_config import ConfigManager
from .state_manager import BaseStateManager, MemoryStateManager, StateManager

logger = logging.getLogger("neo4j_river.api")

# Load environment variables
load_dotenv()


def build_orchestrator(settings: Settings) -> RiverOrchestrator:
    """Wire the state store, river configuration and orchestrator from settings"""
    state_manager: BaseStateManager
    if settings.postgres_url:
        state_manager = StateManager(settings.postgres_url)
    else:
        logger.warning("WARNING: RIVER_POSTGRES_URL not set - checkpoints are kept in memory only")
        state_manager = MemoryStateManager()

    config_manager = ConfigManager(
        settings.rivers_dir,
        defaults={"username": settings.neo4j_username, "password": settings.neo4j_password},
    )
    return RiverOrchestrator(config_manager, state_manager, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application startup/shutdown lifecycle.
    Starts the river orchestrator and stops every river on shutdown.
    """
    # === STARTUP ===
    settings = Settings()
    setup_logging(settings.log_level, settings.log_file)
    logger.info("Application startup...")

    orchestrator = build_orchestrator(settings)
    await orchestrator.initialize()
    task = asyncio.create_task(orchestrator.run(settings.config_rescan_seconds))

    app.state.settings = settings
    app.state.orchestrator = orchestrator

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down application...")
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    logger.info("SUCCESS: Shutdown complete")


app = FastAPI(
    title="Neo4j River API",
    description="Status and provisioning API for Neo4j to Elasticsearch rivers",
    version="1.0.0",
    lifespan=lifespan
)


# Models
class RiverProvisionRequest(BaseModel):
    name: str
    document: Dict[str, Any]


def get_orchestrator() -> RiverOrchestrator:
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="River orchestrator not running")
    return orchestrator


# API Endpoints
@app.get("/api/health")
async def health_check():
    return {"status": "ok"}


@app.get("/api/rivers")
async def list_rivers():
    """List all rivers with their status and last committed checkpoint"""
    orchestrator = get_orchestrator()
    return {"status": "success", "rivers": orchestrator.list_status()}


@app.get("/api/rivers/{river_name}")
async def get_river(river_name: str):
    """Status, checkpoint and ledger size of a single river"""
    orchestrator = get_orchestrator()
    try:
        updater = orchestrator.get_updater(river_name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"River {river_name} not found")

    info = updater.status_info()
    try:
        stats = await orchestrator.state_manager.get_sync_stats(river_name)
        info["tracked_nodes"] = stats.get("tracked_nodes", 0)
    except Exception as e:
        logger.error(f"Error reading sync stats for {river_name}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return info


@app.post("/api/rivers", status_code=201)
async def provision_river(request: RiverProvisionRequest):
    """Provision a river document and start its poll loop if it is active"""
    orchestrator = get_orchestrator()

    if await orchestrator.config_manager.get_config(request.name) is not None:
        raise HTTPException(status_code=409, detail=f"River {request.name} already exists")

    try:
        updater = await orchestrator.provision_river(request.name, request.document)
    except RiverConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"API: Provisioned river {request.name}")
    if updater is None:
        return {"status": "success", "river": {"river_name": request.name, "status": "inactive"}}
    return {"status": "success", "river": updater.status_info()}


@app.delete("/api/rivers/{river_name}")
async def delete_river(river_name: str):
    """Stop a river and delete its document, checkpoint and node ledger"""
    orchestrator = get_orchestrator()
    try:
        await orchestrator.remove_river(river_name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"River {river_name} not found")

    logger.info(f"API: Removed river {river_name}")
    return {"status": "success", "river_name": river_name}


@app.post("/api/rivers/{river_name}/sync-now")
async def sync_now(river_name: str):
    """
    Run one sync cycle for a river immediately.
    Useful for testing without waiting for the poll interval.
    """
    orchestrator = get_orchestrator()
    logger.info(f"API: Triggering sync-now for river: {river_name}")

    try:
        result = await orchestrator.trigger_sync(river_name)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"River {river_name} not found")
    except RuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RiverError as e:
        status_code = 503 if e.retryable else 500
        raise HTTPException(status_code=status_code, detail=str(e))

    return {"status": "success", **result}


def main():
    settings = Settings()
    uvicorn.run(
        "neo4j_river.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_config=None,  # Logging is configured by setup_logging in the lifespan
        access_log=False
    )


if __name__ == "__main__":
    main()
