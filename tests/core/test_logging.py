import structlog

from src.turnkit.observability import get_logger, setup_logging, setup_logging_from_config
from src.turnkit.observability.logging import SecretRedactor


def test_redactor_masks_sensitive_keys_and_values():
    redactor = SecretRedactor()
    event = redactor(
        None,
        "info",
        {
            "event": "provider_call",
            "apikey": "sk-abcdefghijkl",
            "headers": {"Authorization": "Bearer abc.def"},
            "detail": "failed with key sk-1234567890abcdef",
            "notes": ["Bearer xyz123", 4],
        },
    )
    assert event["apikey"] == "[REDACTED]"
    assert event["headers"]["Authorization"] == "[REDACTED]"
    assert event["detail"] == "failed with key [REDACTED]"
    assert event["notes"] == ["Bearer [REDACTED]", 4]
    assert event["event"] == "provider_call"


def test_setup_logging_configures_structlog():
    setup_logging(level="DEBUG", format="json")
    assert structlog.is_configured()
    setup_logging_from_config({"logging": {"level": "WARNING", "format": "console", "redact_sensitive": False}})
    setup_logging_from_config(None)
    logger = get_logger("tests.logging")
    logger.info("logging_smoke_test", value=1)
