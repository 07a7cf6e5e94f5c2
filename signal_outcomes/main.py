"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from signal_outcomes.config import settings
from signal_outcomes.database import create_db_and_tables
from signal_outcomes.services.price_oracle import PriceCache
from signal_outcomes.utils.logging import setup_logging
from signal_outcomes.api import outcomes, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()
    # One price cache for the process, shared by scheduled and manual cycles
    app.state.price_cache = PriceCache(settings.price_cache_ttl_seconds)

    from signal_outcomes.engine.scheduler import start_scheduler, stop_scheduler
    if settings.scheduler_enabled:
        start_scheduler(settings.resolve_interval, app.state.price_cache)

    yield

    stop_scheduler()


app = FastAPI(
    title="Signal Outcomes",
    description="Resolves directional market calls and publishes rolling accuracy statistics",
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

# Mount routers
app.include_router(outcomes.router)
app.include_router(outcomes.resolve_router)
app.include_router(system.router)
