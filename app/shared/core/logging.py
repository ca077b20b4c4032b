import sys
import structlog
import logging
from app.shared.core.config import get_settings

SENSITIVE_FIELDS = {
    "token", "secret", "client_secret", "sas_token", "sas_url",
    "access_token", "password", "authorization"
}


def secret_redactor(logger, method_name, event_dict):
    """
    Redact credentials from log events.
    SAS tokens and service principal secrets must never reach log sinks.
    """
    for field in SENSITIVE_FIELDS:
        if field in event_dict:
            event_dict[field] = "[REDACTED]"

    for container in ["payload", "details", "extra"]:
        if container in event_dict and isinstance(event_dict[container], dict):
            for field in SENSITIVE_FIELDS:
                if field in event_dict[container]:
                    event_dict[container][field] = "[REDACTED]"

    return event_dict


def setup_logging():
    settings = get_settings()

    # 1. Choose the renderer based on environment
    if settings.DEBUG:
        renderer = structlog.dev.ConsoleRenderer()
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        min_level = logging.INFO

    # 2. Processor pipeline
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        secret_redactor,
        renderer
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # 3. Route standard logging (uvicorn, azure-core) through stdout
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=min_level,
    )
    # azure-core logs every HTTP request at INFO
    logging.getLogger("azure").setLevel(logging.WARNING)
