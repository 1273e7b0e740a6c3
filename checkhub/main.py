"""
Check Hub — Entry point.

Starts the FastAPI server (and with it the poller) with configuration from
config.yaml / env vars.
"""

import logging
import sys
from typing import Optional

import structlog
import uvicorn

from .config import load_config
from .api import create_app


def setup_logging(level: str, fmt: str, node_id: Optional[str] = None):
    """
    Configure structlog on top of stdlib logging (uvicorn logs go the same way).

    Every event carries the poller node_id. httpx logs one line per request,
    so it is held at WARNING.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if fmt == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        # tracebacks from exc_info=True become a string field in JSON output
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        stream=sys.stdout,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)

    structlog.contextvars.clear_contextvars()
    if node_id:
        structlog.contextvars.bind_contextvars(node_id=node_id)


def main():
    config = load_config()

    setup_logging(config.logging.level, config.logging.format, node_id=config.poller.node_id)

    log = structlog.get_logger()
    log.info("config_loaded",
             poll_interval=config.poller.interval_seconds,
             concurrency=config.poller.concurrency,
             lease_ttl=config.lease_ttl_seconds,
             db_path=config.history.db_path,
             api_port=config.api.port,
             declared_targets=len(config.targets) if config.targets is not None else None)

    app = create_app(config)

    uvicorn.run(
        app,
        host=config.api.host,
        port=config.api.port,
    )


if __name__ == "__main__":
    main()
