"""
Structured logging configuration.

The API process and the trigger worker log JSON through structlog in
production and readable text in development. Request and job context bound
with ``structlog.contextvars`` is merged into every JSON line.
"""
import logging
import re
import sys
from typing import Any

from vigil.core.config import settings

# Keys whose values are replaced outright. Playbook step inputs carry webhook
# URLs and outbound headers, which routinely embed credentials.
SENSITIVE_FIELDS = (
    "password",
    "token",
    "api_key",
    "secret",
    "authorization",
    "cookie",
    "webhook_url",
    "headers",
)

NOISY_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "apscheduler", "httpx")

REDACTED = "***REDACTED***"

_EMAIL_RE = re.compile(r"^([^@\s])[^@\s]*@([^@\s]+\.[^@\s]+)$")


def setup_logging() -> None:
    """Configure logging once, at process start."""
    level = getattr(logging, settings.LOG_LEVEL)

    if settings.DEBUG:
        logging.basicConfig(
            level=level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            stream=sys.stdout,
        )
    else:
        _configure_json(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _configure_json(level: int) -> None:
    try:
        import structlog
    except ImportError:
        # structlog missing from the image: plain JSON lines via python-json-logger
        from pythonjsonlogger import jsonlogger

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(
            jsonlogger.JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s", timestamp=True)
        )
        root = logging.getLogger()
        root.handlers = [handler]
        root.setLevel(level)
        return

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
            redact_sensitive_data,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)


def redact_sensitive_data(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: redact sensitive keys, recursing into nested mappings."""
    return _redact(event_dict)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and any(field in key.lower() for field in SENSITIVE_FIELDS):
                redacted[key] = REDACTED
            elif isinstance(key, str) and key.endswith("id"):
                # Ids are kept verbatim
                redacted[key] = item
            else:
                redacted[key] = _redact(item)
        return redacted
    if isinstance(value, list):
        return [_redact(item) for item in value]
    if isinstance(value, str):
        return redact_string(value)
    return value


def redact_string(value: str) -> str:
    """Mask email addresses and long token-like strings."""
    match = _EMAIL_RE.match(value)
    if match:
        return f"{match.group(1)}***@{match.group(2)}"

    if len(value) > 20 and value.replace("_", "").replace("-", "").isalnum():
        return f"{value[:8]}...{value[-4:]}"

    return value
