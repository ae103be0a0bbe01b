"""
CaseFlow Engine - Main Server

FastAPI entry point. Routes are organized in /routes/, business logic in
/services/.

    uvicorn caseflow.server:app --reload
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient

load_dotenv()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from .routes import (
    aging_router,
    queues_router,
    set_queues_deps,
    set_work_items_deps,
    work_items_router,
)

# ==================== SERVICES ====================
from .services.aging_sweep import AgingSweep
from .services.engine_config import EngineConfig
from .services.mongo_repository import MongoRepository
from .services.notification_service import NotificationService
from .services.queue_router import MongoQueueSource, QueueRouter, seed_default_queues
from .services.workflow_engine import WorkflowEngine

# ==================== CONFIG ====================
config = EngineConfig.from_env()

# Locations that get the default queue set on startup, comma separated
SEED_LOCATION_IDS = [
    loc.strip() for loc in os.environ.get("SEED_LOCATION_IDS", "").split(",") if loc.strip()
]

mongo_client = None
db = None
aging_sweep = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global mongo_client, db, aging_sweep

    # Startup
    logger.info("Starting CaseFlow Engine...")

    # Connect to MongoDB
    mongo_client = AsyncIOMotorClient(config.mongo_url, tz_aware=True)
    db = mongo_client[config.db_name]

    repo = MongoRepository(mongo_client, db)
    await repo.create_indexes()

    # Queue configuration snapshot
    queue_source = MongoQueueSource(db)
    if SEED_LOCATION_IDS:
        await seed_default_queues(queue_source, SEED_LOCATION_IDS)
    else:
        await queue_source.load()

    notifications = NotificationService.from_config(config, db=db)
    engine = WorkflowEngine(repo, QueueRouter(queue_source), config, notifications=notifications)
    aging_sweep = AgingSweep(repo, config, notifications=notifications)

    # Initialize routers
    set_work_items_deps(engine)
    set_queues_deps(engine, aging_sweep)

    if config.aging_sweep_enabled:
        aging_sweep.start()
        logger.info("Aging sweep worker started (interval: %d min)", config.aging_sweep_interval_minutes)

    logger.info("CaseFlow Engine started successfully")

    yield

    # Shutdown
    logger.info("Shutting down CaseFlow Engine...")
    if aging_sweep:
        await aging_sweep.stop()
    if mongo_client:
        mongo_client.close()


app = FastAPI(title="CaseFlow Engine", lifespan=lifespan)

api_router = APIRouter(prefix="/api")
api_router.include_router(work_items_router)
api_router.include_router(queues_router)
api_router.include_router(aging_router)


@api_router.get("/health")
async def health():
    return {
        "status": "ok",
        "aging_sweep_running": bool(aging_sweep and aging_sweep.running),
    }


app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get("CORS_ORIGINS", "*").split(","),
    allow_methods=["*"],
    allow_headers=["*"],
)
