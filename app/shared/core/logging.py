import sys
import structlog
import logging
from typing import Any, cast
from app.shared.core.config import get_settings


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact PII and credentials from log events.
    RADIUS credentials travel as query parameters, so `apipass` is covered too.
    """
    import re

    email_regex = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
    apipass_regex = re.compile(r"(apipass=)[^&\s]+", re.IGNORECASE)
    pii_fields = {
        "password",
        "apipass",
        "token",
        "secret",
        "authorization",
        "api_key",
        "access_code",
        "authorization_code",
    }
    pii_suffixes = ("_token", "_secret", "_password", "_key")

    def is_sensitive_key(key: Any) -> bool:
        key_norm = str(key).lower().strip().replace("-", "_")
        if key_norm in pii_fields:
            return True
        return key_norm.endswith(pii_suffixes)

    def redact_text(text: Any) -> Any:
        if not isinstance(text, str):
            return text
        text = apipass_regex.sub(r"\1***", text)
        return email_regex.sub("[EMAIL_REDACTED]", text)

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if is_sensitive_key(k) else redact_recursive(v))
                for k, v in data.items()
            }
        elif isinstance(data, list):
            return [redact_recursive(item) for item in data]
        elif isinstance(data, str):
            return redact_text(data)
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,  # request_id from middleware
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        pii_redactor,
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

    # Route stdlib logging (uvicorn, sqlalchemy) to the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )
