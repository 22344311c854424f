import sys
import structlog
import logging
from typing import Any, cast
from resource_broker.shared.core.config import Settings, get_settings
from resource_broker.shared.core.redaction import redact_secrets


def secret_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact tokens, keys and connection-string credentials from logs.
    Callers never log secret values; this catches the ones that slip through
    inside driver error text.
    """
    event = event_dict.get("event")
    redacted = redact_secrets(event_dict)
    if isinstance(redacted, dict):
        # The event name is a fixed identifier and must survive key-based redaction.
        if event is not None:
            redacted["event"] = event
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging(settings: Settings | None = None) -> None:
    settings = settings or get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        secret_redactor,
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Library logs (httpx, sqlalchemy, azure) go to stderr alongside ours.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )


def audit_log(
    event: str,
    *,
    resource: str,
    success: bool,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Standardized helper for gated operation audit events.
    """
    logger = structlog.get_logger("audit")
    logger.info(
        event,
        resource=resource,
        success=success,
        metadata=details or {},
    )
