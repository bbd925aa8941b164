"""
Ark agent logging setup module.

structlog renders every record, including those from stdlib loggers used by
uvicorn, alembic and httpx, onto stdout. The launcher redirects the agent's
stdout into agent.log.
"""

import logging
import sys

import structlog

# Libraries that are chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "alembic.runtime.migration", "botocore", "boto3")

_logging_configured = False


def _shared_processors():
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def setup_logging(config):
    """
    Sets up structlog and stdlib logging from the 'logging' config section
    (level, format: plain|json). Only the first call has an effect.

    Args:
        config (dict): Configuration data containing an optional 'logging' section
    """
    global _logging_configured
    if _logging_configured:
        return

    logging_cfg = config.get("logging", {})
    level = getattr(logging, logging_cfg.get("level", "INFO").upper(), logging.INFO)

    if logging_cfg.get("format", "plain") == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=_shared_processors()
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_shared_processors(),
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    _logging_configured = True


def get_logger(name):
    """
    Returns a named structlog logger instance.
    """
    return structlog.get_logger(name)
