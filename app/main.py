# app/main.py

import logging
import os
import subprocess
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.core.config import get_settings
from app.core.logging_config import configure_logging
from app.database import async_session
from app.integrations.setup import build_registry
from app.routes import health, sync_inventory, sync_queue, sync_rules
from app.services.sync_queue.auto_drain import AutoDrainSupervisor

from app import models  # noqa: F401  registers all tables on Base

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    # Run migrations on startup
    if os.getenv('RUN_MIGRATIONS', 'false').lower() == 'true':
        logger.info("Running database migrations...")
        result = subprocess.run(['alembic', 'upgrade', 'head'], capture_output=True, text=True)
        if result.returncode == 0:
            logger.info("Migrations completed successfully")
        else:
            logger.error(f"Migration failed: {result.stderr}")

    app.state.registry = build_registry(settings)

    supervisor = AutoDrainSupervisor(async_session, app.state.registry, settings=settings)
    app.state.auto_drain = supervisor
    if settings.AUTO_DRAIN_SCHEDULER_ENABLED:
        supervisor.start()
    else:
        logger.info("Auto-drain supervisor is disabled. Set AUTO_DRAIN_SCHEDULER_ENABLED=true to enable")

    try:
        yield  # This is where the app runs
    finally:
        supervisor.stop()


app = FastAPI(
    title="Inventory Sync Engine",
    lifespan=lifespan
)

app.include_router(sync_queue.router)
app.include_router(sync_inventory.router)
app.include_router(sync_rules.router)
app.include_router(health.router)  # Health check should be accessible without auth
