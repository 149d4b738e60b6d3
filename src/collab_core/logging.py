from __future__ import annotations

import logging
import re
import sys
from collections.abc import Callable, Mapping
from typing import Any


SESSION_ID_LOG_LENGTH = 8

_REDACTIONS = (
    (re.compile(r"(?i)\b(authorization|token|api_key|password)=([^\s,;]+)"), r"\1=[redacted]"),
    (re.compile(r"(?i)\b(https?://)[^/\s@]+@"), r"\1[redacted]@"),
    (re.compile(r"\b(?:gh[pousr]|github_pat)_[A-Za-z0-9_]{20,}\b"), "[redacted]"),
)
_LOG_DEFAULTS: dict[str, str] = {
    "session_id": "-",
    "client_id": "-",
    "repo": "-",
    "component": "",
    "operation": "",
    "result": "",
    "error_class": "",
}
STRUCTURED_LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "[session_id=%(session_id)s client_id=%(client_id)s repo=%(repo)s] "
    "component=%(component)s operation=%(operation)s result=%(result)s "
    "error_class=%(error_class)s %(message)s"
)


def redact_secrets(message: str) -> str:
    for pattern, replacement in _REDACTIONS:
        message = pattern.sub(replacement, message)
    return message


class StructuredLogDefaultsFilter(logging.Filter):
    """Fill the session fields the hub format expects and scrub credentials from the message."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _LOG_DEFAULTS.items():
            if not getattr(record, key, ""):
                setattr(record, key, value)
        try:
            message = record.getMessage()
        except Exception:
            return True
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def configure_structured_logger(logger: logging.Logger, *, level: str) -> None:
    handler = logging.StreamHandler(sys.__stderr__)
    handler.addFilter(StructuredLogDefaultsFilter())
    handler.setFormatter(logging.Formatter(STRUCTURED_LOG_FORMAT))
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(getattr(logging, str(level or "info").upper(), logging.INFO))
    logger.propagate = False


def configure_domain_log_levels(
    *,
    domains: Mapping[str, Any] | None,
    logger_prefix: str,
    normalize_level: Callable[[Any], str],
) -> None:
    if not isinstance(domains, Mapping):
        return
    for domain, level_value in domains.items():
        normalized_domain = str(domain or "").strip().lower()
        if not normalized_domain:
            continue
        level = normalize_level(level_value)
        logging.getLogger(f"{logger_prefix}.{normalized_domain}").setLevel(
            getattr(logging, level.upper(), logging.INFO)
        )


def session_log_extra(
    session_id: str,
    *,
    component: str,
    operation: str,
    result: str = "",
    client_id: str = "",
    repo: str = "",
    error_class: str = "",
) -> dict[str, Any]:
    # Never log a full session id.
    return {
        "session_id": session_id[:SESSION_ID_LOG_LENGTH],
        "client_id": client_id,
        "repo": repo,
        "component": component,
        "operation": operation,
        "result": result,
        "error_class": error_class,
    }
