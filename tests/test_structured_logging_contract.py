from __future__ import annotations

import io
import logging

from collab_core import logging as core_logging
import collab_hub.server as hub_server


REQUIRED_KEYS = (
    "session_id",
    "client_id",
    "repo",
    "component",
    "operation",
    "result",
    "error_class",
)


def _record(msg: str, *args) -> logging.LogRecord:
    return logging.LogRecord(
        name="collab_hub",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )


def test_structured_log_filter_injects_required_defaults() -> None:
    record = _record("hello")

    assert core_logging.StructuredLogDefaultsFilter().filter(record) is True
    for key in REQUIRED_KEYS:
        assert hasattr(record, key)
    assert (record.session_id, record.client_id, record.repo) == ("-", "-", "-")


def test_structured_log_filter_redacts_secrets() -> None:
    record = _record("clone failed token=%s for %s", "ghp_abc123", "octo/demo")

    core_logging.StructuredLogDefaultsFilter().filter(record)

    assert record.getMessage() == "clone failed token=[redacted] for octo/demo"


def test_structured_log_filter_redacts_url_credentials_and_github_tokens() -> None:
    record = _record(
        "git clone https://octo:%s@github.com/octo/demo.git failed",
        "ghp_" + "a" * 36,
    )

    core_logging.StructuredLogDefaultsFilter().filter(record)

    assert record.getMessage() == "git clone https://[redacted]@github.com/octo/demo.git failed"
    assert core_logging.redact_secrets("using github_pat_" + "B1" * 20) == "using [redacted]"
    assert core_logging.redact_secrets("git@github.com:octo/demo.git") == "git@github.com:octo/demo.git"


def test_session_log_extra_truncates_session_id() -> None:
    extra = core_logging.session_log_extra(
        "0123456789abcdef0123456789abcdef",
        component="registry",
        operation="create",
        result="active",
    )

    assert extra["session_id"] == "01234567"
    assert extra["component"] == "registry"
    assert extra["client_id"] == ""


def test_configured_hub_logging_formatter_emits_required_fields() -> None:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(core_logging.StructuredLogDefaultsFilter())
    handler.setFormatter(logging.Formatter(core_logging.STRUCTURED_LOG_FORMAT))

    logger = logging.getLogger("collab_hub.structured_contract_test")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    logger.info(
        "event",
        extra=core_logging.session_log_extra(
            "f" * 32, component="coordinator", operation="connect", client_id="7", repo="octo/demo"
        ),
    )
    text = stream.getvalue()
    for key in REQUIRED_KEYS:
        assert f"{key}=" in text
    assert "[session_id=ffffffff client_id=7 repo=octo/demo]" in text
    assert "component=coordinator" in text


def test_configure_hub_logging_applies_domain_levels() -> None:
    hub_server._configure_hub_logging("warning", {"sessions": "debug", "": "error"})

    hub_logger = logging.getLogger("collab_hub")
    assert hub_logger.level == logging.WARNING
    assert hub_logger.propagate is False
    assert len(hub_logger.handlers) == 1
    assert logging.getLogger("collab_hub.sessions").level == logging.DEBUG
    assert logging.getLogger("httpx").level == logging.WARNING


def test_uvicorn_log_level_caps_debug() -> None:
    assert hub_server._uvicorn_log_level("debug") == "info"
    assert hub_server._uvicorn_log_level("WARNING") == "warning"
    assert hub_server._uvicorn_log_level("bogus") == "info"
