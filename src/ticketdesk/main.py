"""Application entry point — schema init, cache sweeper, and web server in one process."""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ticketdesk.cache import cache
from ticketdesk.config import Config, load_config
from ticketdesk.jobs import run_cache_sweep
from ticketdesk.storage.connection import ConnectionManager, describe_url
from ticketdesk.storage.executor import QueryExecutor
from ticketdesk.storage.schema import initialize_schema
from ticketdesk.web.app import create_app

logger = logging.getLogger("ticketdesk")

_LOG_FORMATS = {
    "json": json.dumps(
        {
            "time": "%(asctime)s",
            "level": "%(levelname)s",
            "logger": "%(name)s",
            "env": "{env}",
            "message": "%(message)s",
        }
    ),
    "text": "%(asctime)s [%(levelname)s] %(name)s ({env}): %(message)s",
}

_HANDLER_NAME = "ticketdesk"


def _setup_logging(config: Config) -> None:
    """Install the process log handler on the root logger.

    Calling it again replaces the handler instead of stacking a second one.
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    template = _LOG_FORMATS.get(config.log_format, _LOG_FORMATS["text"])

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(template.replace("{env}", config.app_env)))

    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(existing)
    root.setLevel(level)
    root.addHandler(handler)


def _build_executor(config: Config) -> QueryExecutor:
    connections = ConnectionManager(config.connection_url)
    return QueryExecutor(
        connections,
        max_retries=config.db_max_retries,
        backoff_seconds=config.db_retry_backoff_seconds,
    )


def _build_scheduler(config: Config) -> BackgroundScheduler:
    """Create a BackgroundScheduler with the cache sweep job."""
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_cache_sweep,
        trigger=IntervalTrigger(minutes=config.cache_sweep_interval_minutes),
        args=[cache],
        id="cache_sweep",
        name="Expired cache sweep",
    )
    return scheduler


def main() -> None:
    """Load config, initialize the schema, and start scheduler + web server."""
    config = load_config()
    _setup_logging(config)

    logger.info(
        "Ticketdesk starting (env=%s, db=%s)",
        config.app_env,
        describe_url(config.database_url),
    )

    cache.default_ttl = config.cache_default_ttl_seconds
    executor = _build_executor(config)

    # No traffic without a schema: a failure here aborts start-up.
    initialize_schema(executor, allow_destructive=config.allow_destructive_migrations)

    scheduler = _build_scheduler(config)

    @asynccontextmanager
    async def lifespan(app):
        logger.info("Scheduler starting")
        scheduler.start()
        yield
        logger.info("Scheduler shutting down")
        scheduler.shutdown(wait=False)
        executor.connections.close()

    app = create_app(config, executor, lifespan=lifespan)

    uvicorn.run(app, host=config.web_host, port=config.web_port)


if __name__ == "__main__":
    main()
