"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. Lifespan owns the realtime pipeline:

    startup:  change source → registry → broadcaster task
    shutdown: broadcaster task → change source → database engine

The pieces hang off app.state so routes, the WebSocket endpoint and tests
all reach the same instances.
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orderstream import __version__
from orderstream.api import api_router
from orderstream.config import settings
from orderstream.log import configure_logging
from orderstream.realtime.broadcaster import Broadcaster, ScopeFilter
from orderstream.realtime.registry import SubscriberRegistry
from orderstream.realtime.source import ChangeSource, build_change_source

logger = structlog.get_logger()


def _lifespan(change_source: Optional[ChangeSource], scope: Optional[ScopeFilter]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle.

        Learn: Anything before `yield` runs at startup, after `yield` runs
        at shutdown.
        """
        logger.info(
            "orderstream.starting",
            version=__version__,
            environment=settings.environment,
            change_source=settings.change_source,
            ws_path=settings.ws_path,
        )

        source = change_source or build_change_source(
            settings.change_source,
            settings.database_url,
            settings.notify_channel,
            settings.source_reconnect_delay,
        )
        registry = SubscriberRegistry()
        broadcaster = Broadcaster(
            registry,
            source,
            send_timeout=settings.ws_send_timeout,
            scope=scope,
        )
        app.state.change_source = source
        app.state.registry = registry
        app.state.broadcaster = broadcaster

        await source.start()
        broadcaster.start()
        logger.info("orderstream.broadcaster_started")

        yield

        logger.info("orderstream.shutdown", subscribers=registry.count())
        await broadcaster.stop()
        await source.close()

        from orderstream.db.engine import engine
        await engine.dispose()

    return lifespan


def create_app(
    change_source: Optional[ChangeSource] = None,
    scope: Optional[ScopeFilter] = None,
) -> FastAPI:
    """Build and return the FastAPI application.

    ``change_source`` overrides ORDERSTREAM_CHANGE_SOURCE (tests pass a
    MemoryChangeSource); ``scope`` installs a per-subscriber event filter.
    """
    configure_logging(settings.log_level, json_output=settings.log_json)

    app = FastAPI(
        title="OrderStream",
        description="Order dashboard API with live WebSocket change feed",
        version=__version__,
        lifespan=_lifespan(change_source, scope),
    )

    from orderstream.middleware.request_id import RequestIdMiddleware

    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    from orderstream.realtime.websocket import router as ws_router
    app.include_router(ws_router)

    return app


# Default app instance (used by uvicorn: orderstream.main:app)
app = create_app()
