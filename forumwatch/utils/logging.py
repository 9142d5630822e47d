import logging

import structlog

from forumwatch.config import settings


def _renderer():
    if settings.is_production:
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer()


def setup_logging(level: str | None = None) -> None:
    """
    Configure structlog on top of stdlib logging.

    JSON lines in production, coloured console output everywhere else.
    ``level`` overrides ``settings.log_level`` (the CLI uses it for --verbose).
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            _renderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    name = (level or settings.log_level).upper()
    log_level = getattr(logging, name, logging.INFO)
    logging.basicConfig(format="%(message)s", level=log_level)

    # httpx logs every request at INFO; fetch outcomes are logged by the collector
    logging.getLogger("httpx").setLevel(max(log_level, logging.WARNING))
    logging.getLogger("apscheduler").setLevel(max(log_level, logging.WARNING))


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance."""
    return structlog.get_logger(name)
