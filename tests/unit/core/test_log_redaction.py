from unittest.mock import MagicMock, patch

import structlog
from structlog.testing import capture_logs

from resource_broker.shared.core.config import Settings
from resource_broker.shared.core.logging import audit_log, secret_redactor, setup_logging


def test_secret_redactor_masks_keys_and_text():
    event = {
        "event": "token_refresh_started",
        "scope": "https://database.windows.net/.default",
        "client_secret": "hunter2",
        "error": "driver said Password=p4ss;Server=db",
        "nested": {"api_key": "k-1", "resource_id": "prod-sql"},
    }

    redacted = secret_redactor(None, "info", event)

    assert redacted["event"] == "token_refresh_started"
    assert redacted["scope"] == event["scope"]
    assert redacted["client_secret"] == "***"
    assert "p4ss" not in redacted["error"]
    assert redacted["nested"] == {"api_key": "***", "resource_id": "prod-sql"}


def test_audit_log_uses_fixed_schema():
    with capture_logs() as logs:
        audit_log(
            "read_query_executed",
            resource="prod-sql",
            success=True,
            details={"row_count": 3},
        )

    assert logs == [
        {
            "event": "read_query_executed",
            "log_level": "info",
            "resource": "prod-sql",
            "success": True,
            "metadata": {"row_count": 3},
        }
    ]


def test_setup_logging_installs_redactor():
    with patch.object(structlog, "configure") as configure, patch(
        "resource_broker.shared.core.logging.logging.basicConfig"
    ) as basic_config:
        setup_logging(Settings(DEBUG=True))

    processors = configure.call_args.kwargs["processors"]
    assert secret_redactor in processors
    assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
    assert basic_config.call_args.kwargs["level"] == 10


def test_setup_logging_json_in_production():
    configure = MagicMock()
    with patch.object(structlog, "configure", configure), patch(
        "resource_broker.shared.core.logging.logging.basicConfig"
    ):
        setup_logging(Settings(DEBUG=False))

    processors = configure.call_args.kwargs["processors"]
    assert isinstance(processors[-1], structlog.processors.JSONRenderer)
