import logging
import re
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

# Request id of the request currently being handled, "-" outside a request
request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s'

SENSITIVE_KEYS = (
    "access_token", "refresh_token", "client_secret", "client_id",
    "authorization", "password", "secret", "token",
)

# key=value, key: value and "key": "value" forms
_SENSITIVE_PATTERN = re.compile(
    r'(?P<key>["\']?(?:' + "|".join(SENSITIVE_KEYS) + r')["\']?\s*[=:]\s*)(?P<quote>["\']?)(?P<value>[^\s,"\'}&]+)',
    re.IGNORECASE,
)
_BEARER_PATTERN = re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE)

def generate_request_id() -> str:
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"

def redact(message: str) -> str:
    """Mask credential values that ended up in a log message."""
    # Bearer first: "Authorization: Bearer x" would otherwise only lose the word "Bearer"
    message = _BEARER_PATTERN.sub(r"\1[REDACTED]", message)
    return _SENSITIVE_PATTERN.sub(r"\g<key>\g<quote>[REDACTED]", message)

class RequestIdFilter(logging.Filter):
    """Attach the current request id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        return True

class RedactingFilter(logging.Filter):
    """Strip tokens and secrets from rendered messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        rendered = record.getMessage()
        cleaned = redact(rendered)
        if cleaned != rendered:
            record.msg = cleaned
            record.args = None
        return True

def configure_logging(level: str = "INFO", redact_secrets: bool = True, stream=None) -> None:
    """
    Configure root logging the same way for the API and the scripts.

    Records go to stderr so systemd/docker capture them. In production
    (``redact_secrets=True``) credential values are masked before output.
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.addFilter(RequestIdFilter())
    if redact_secrets:
        handler.addFilter(RedactingFilter())
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )

def bind_request_id(request_id: Optional[str] = None):
    """Set the request id for the current context; returns the reset token."""
    return request_id_var.set(request_id or generate_request_id())
