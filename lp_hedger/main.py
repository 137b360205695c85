"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from lp_hedger.config import settings
from lp_hedger.database import create_db_and_tables
from lp_hedger.utils.logging import setup_logging
from lp_hedger.api import hedges, positions, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    create_db_and_tables()
    from lp_hedger.engine.scheduler import start_scheduler, stop_scheduler
    start_scheduler()

    # Start Telegram bot if configured
    telegram_bot = None
    if settings.telegram_bot_token:
        from lp_hedger.services.telegram_bot import init_bot
        telegram_bot = init_bot()
        telegram_bot.start()

    yield

    if telegram_bot:
        telegram_bot.stop()
    stop_scheduler()


app = FastAPI(
    title="LP Hedger",
    description="Delta-neutral Hyperliquid hedging for Uniswap V3 LP positions",
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
app.include_router(hedges.router)
app.include_router(positions.router)
app.include_router(system.router)
