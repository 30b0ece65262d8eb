# Core Module - Structured Logging Setup
#
# structlog renders JSON lines on top of stdlib logging, so modules keep
# using logging.getLogger(__name__) while request/audit events go
# through structlog.get_logger(...) with key-value context.

import logging
import sys

import structlog

_configured = False


def configure_logging(level: str = "INFO", force: bool = False) -> None:
    """Configure stdlib logging + structlog once per process."""
    global _configured
    if _configured and not force:
        return

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter('%(message)s'))  # structlog handles formatting

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if getattr(existing, "_tracr_handler", False):
            root_logger.removeHandler(existing)
    handler._tracr_handler = True
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    _configured = True
