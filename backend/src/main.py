from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from backend.src.api.database import async_session_factory, engine
from backend.src.api.routes import limiter, router
from backend.src.config import settings
from backend.src.contracts.models import Base

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        structlog.get_config().get("min_level", 0),
    ),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    logger.info("starting_up", cors_origins=settings.cors_origin_list)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_tables_ready")

    from backend.src.dispatcher.dispatcher import AlertDispatcher
    from backend.src.notifier import EmailNotifier, NotifierRegistry, SlackNotifier
    from backend.src.scheduler.scheduler import PriceWatchScheduler
    from backend.src.scraper.scraper import PlaywrightExtractor

    sink = NotifierRegistry(
        session_factory=async_session_factory,
        email_notifier=EmailNotifier(settings),
        slack_notifier=SlackNotifier(),
    )
    dispatcher = AlertDispatcher(sink, settings=settings)
    scheduler = PriceWatchScheduler(
        session_factory=async_session_factory,
        extractor=PlaywrightExtractor(settings=settings),
        dispatcher=dispatcher,
        settings=settings,
    )
    scheduler.start()
    app.state.scheduler = scheduler
    logger.info("scheduler_started")

    yield

    # Shutdown
    scheduler.stop()
    logger.info("scheduler_stopped")

    await dispatcher.drain()
    logger.info("deliveries_drained")

    await engine.dispose()
    logger.info("shutdown_complete")


app = FastAPI(
    title="SaaS Price Watch API",
    description="SaaS pricing page monitoring and price-change alerts",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
