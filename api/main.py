"""
FastAPI application initialization and configuration.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health
from api.routes.v1 import action_items, analyses, analyze
from api.services.action_items import ActionItemTracker
from api.services.job_store import JobRecordStore
from api.services.result_watcher import RealtimeWatcher, ResultPoller
from api.services.submissions import SubmissionLatch, SubmissionOrchestrator, build_strategy
from core.change_feed import ChangeFeed, LocalChangeFeed, RedisChangeFeed
from core.config import Settings, get_settings
from core.middleware import (
    ErrorHandlingMiddleware,
    StructuredLoggingMiddleware,
    setup_error_handlers,
    setup_logging,
)
from core.polling import PollSchedule, Sleeper
from database.engine import Database

logger = logging.getLogger(__name__)


def build_change_feed(settings: Settings) -> ChangeFeed:
    if settings.redis_url:
        return RedisChangeFeed(settings.redis_url)
    return LocalChangeFeed()


def result_schedule(settings: Settings) -> PollSchedule:
    return PollSchedule(
        interval=settings.result_poll_interval,
        max_attempts=settings.result_max_poll_attempts,
        backoff_after=settings.result_poll_backoff_after,
        max_interval=settings.result_poll_max_interval,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    sleeper: Optional[Sleeper] = None,
) -> FastAPI:
    """
    Build the application.

    ``http_client`` and ``sleeper`` replace the outbound HTTP client and the
    polling timer; tests pass a mock transport and a recording sleeper.
    """
    settings = settings or get_settings()

    # Setup structured logging (do this first, before anything else)
    setup_logging(log_level=settings.log_level, json_logs=settings.json_logs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Starting {settings.app_name} in {settings.app_env} environment "
            f"(integration: {settings.integration_mode})"
        )
        database = Database(
            settings.database_url,
            echo=settings.database_echo,
            pool_size=settings.database_pool_size,
        )
        await database.init()

        change_feed = build_change_feed(settings)
        client = http_client or httpx.AsyncClient(timeout=settings.openai_request_timeout)

        store = JobRecordStore(database, change_feed)
        poller = ResultPoller(store, result_schedule(settings), sleeper)
        realtime = RealtimeWatcher(store, change_feed, timeout=settings.result_watch_timeout)

        # relayed jobs are written by the callback, possibly in another worker
        relay_watcher = realtime if settings.redis_url else poller
        strategy = build_strategy(settings, store, client, relay_watcher, sleeper=sleeper)

        app.state.settings = settings
        app.state.database = database
        app.state.change_feed = change_feed
        app.state.http_client = client
        app.state.job_store = store
        app.state.result_poller = poller
        app.state.realtime_watcher = realtime
        app.state.action_items = ActionItemTracker(database)
        app.state.orchestrator = SubmissionOrchestrator(
            store,
            strategy,
            min_input_length=settings.min_input_length,
            latch=SubmissionLatch(),
        )

        try:
            yield
        finally:
            logger.info(f"Shutting down {settings.app_name}")
            if http_client is None:
                await client.aclose()
            await change_feed.close()
            await database.close()

    app = FastAPI(
        title=settings.app_name,
        description="Situation analysis backend: submission, polling and action items",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Setup error handlers (before middleware)
    setup_error_handlers(app)

    # Add middleware (order matters - they execute in reverse order)
    # 1. Error handling middleware (outermost - catches all errors)
    app.add_middleware(ErrorHandlingMiddleware, debug=settings.debug)

    # 2. Structured logging middleware
    app.add_middleware(
        StructuredLoggingMiddleware,
        log_request_body=settings.log_request_body,
        max_body_size=settings.log_max_body_size,
    )

    # 3. CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(health.router, tags=["Health"])
    app.include_router(analyze.router, prefix="/api", tags=["Analyze"])
    app.include_router(
        analyses.router,
        prefix=f"{settings.api_v1_prefix}/analyses",
        tags=["Analyses"],
    )
    app.include_router(
        action_items.router,
        prefix=settings.api_v1_prefix,
        tags=["Action Items"],
    )

    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "api.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=get_settings().debug,
        log_level=get_settings().log_level.lower(),
    )
