"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from goalreact.config import settings
from goalreact.database import create_db_and_tables, engine as db_engine
from goalreact.engine.order_sync import sync_open_orders_on_startup
from goalreact.engine.runtime import build_runtime
from goalreact.utils.logging import setup_logging
from goalreact.api import system

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    # Refuse to start without exchange credentials
    settings.require_credentials()
    create_db_and_tables()

    runtime = build_runtime(settings, db_engine)
    app.state.runtime = runtime

    await runtime.session.ensure_login("startup")
    # Reconcile positions against exchange orders before any job runs
    if runtime.session.token:
        await sync_open_orders_on_startup(runtime.engine)
    else:
        logger.warning("Startup login failed, skipping order sync")

    if settings.scheduler_enabled:
        runtime.scheduler.start()

    yield

    if runtime.scheduler.scheduler.running:
        runtime.scheduler.stop()
    await runtime.close()


app = FastAPI(
    title="GoalReact Trader",
    description="Goal-reactive Under 2.5 trading engine for the Betfair Exchange",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(system.router)
