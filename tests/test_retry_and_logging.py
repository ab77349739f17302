from __future__ import annotations

import json
import logging

import pytest

from shared.logging import JsonFormatter, get_logger
from shared.retry import RetryConfig, call_with_retry, is_retryable_status


def test_retryable_statuses() -> None:
    assert all(is_retryable_status(code) for code in (429, 502, 503, 504))
    assert not any(is_retryable_status(code) for code in (400, 401, 403, 404, 409, 500))


def test_retry_until_success() -> None:
    attempts = []
    sleeps = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset")
        return "ok"

    result = call_with_retry(
        "flaky",
        flaky,
        is_retryable_exception=lambda exc: isinstance(exc, ConnectionError),
        config=RetryConfig(max_attempts=3, base_delay_seconds=0.1, max_delay_seconds=1.0, jitter_ratio=0),
        sleep=sleeps.append,
    )

    assert result == "ok"
    assert sleeps == [0.1, 0.2]


def test_non_retryable_exception_raises_immediately() -> None:
    attempts = []

    def broken() -> None:
        attempts.append(1)
        raise ValueError("bad")

    with pytest.raises(ValueError):
        call_with_retry("broken", broken, is_retryable_exception=lambda exc: False, sleep=lambda _: None)
    assert len(attempts) == 1


def test_retryable_result_is_returned_on_last_attempt() -> None:
    results = iter([503, 503])
    value = call_with_retry(
        "status",
        lambda: next(results),
        is_retryable_exception=lambda exc: False,
        is_retryable_result=is_retryable_status,
        config=RetryConfig(max_attempts=2),
        sleep=lambda _: None,
    )
    assert value == 503


def test_retry_config_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HTTP_MAX_ATTEMPTS", "5")
    assert RetryConfig.from_env().max_attempts == 5
    monkeypatch.setenv("HTTP_MAX_ATTEMPTS", "0")
    assert RetryConfig.from_env().max_attempts == 1


def test_json_formatter_includes_context_and_extra() -> None:
    record = logging.LogRecord("shared.pagination", logging.DEBUG, __file__, 1, "Calling Bitbucket API", None, None)
    record.path = "/rest/api/1.0/projects"
    record.page = 2
    record.extra = {"attempt": 1}

    payload = json.loads(JsonFormatter().format(record))

    assert payload["level"] == "DEBUG"
    assert payload["logger"] == "shared.pagination"
    assert payload["message"] == "Calling Bitbucket API"
    assert payload["path"] == "/rest/api/1.0/projects"
    assert payload["page"] == 2
    assert payload["attempt"] == 1
    assert "timestamp" in payload


def test_context_adapter_merges_bound_and_call_context(caplog: pytest.LogCaptureFixture) -> None:
    logger = get_logger("tests.adapter", platform="jira")
    with caplog.at_level(logging.INFO, logger="tests.adapter"):
        logger.info("hello", extra={"tool": "jira_get_issue"})

    record = caplog.records[-1]
    assert record.platform == "jira"
    assert record.tool == "jira_get_issue"
