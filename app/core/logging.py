import logging
import re
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

SERVICE_NAME = "paid-access"
REDACTED = "[redacted]"
SENSITIVE_KEYS = frozenset({"api_key", "signature", "signature_header", "secret", "token"})
_STRIPE_SECRET_PATTERN = re.compile(r"\b(sk|rk|whsec)_(live|test)?_?[A-Za-z0-9]{8,}\b")


def redact_secrets(
    _logger: Any,
    _method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    for key, value in list(event_dict.items()):
        if key in SENSITIVE_KEYS and value:
            event_dict[key] = REDACTED
        elif isinstance(value, str):
            event_dict[key] = _STRIPE_SECRET_PATTERN.sub(REDACTED, value)
    return event_dict


def configure_logging(log_level: str = "INFO") -> None:
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )
    structlog.contextvars.bind_contextvars(service=SERVICE_NAME)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            redact_secrets,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
