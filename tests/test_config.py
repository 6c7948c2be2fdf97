import json
import logging

import pytest

from deferflow.config import Settings
from deferflow.logging_config import get_logger, setup_logging
from deferflow.models import RetryPolicy


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("JOB_TIMEOUT_SECONDS", "20")
    monkeypatch.setenv("BULK_BATCH_SIZE", "250")
    monkeypatch.setenv("RETRY_BACKOFF", "fixed")
    monkeypatch.setenv("LOG_JSON", "0")

    settings = Settings.from_env()

    assert settings.job_timeout_seconds == 20.0
    assert settings.bulk_batch_size == 250
    assert settings.retry_backoff == "fixed"
    assert settings.log_json is False
    assert settings.shutdown_grace_seconds == 30.0


def test_job_timeout_must_fit_in_shutdown_grace(monkeypatch):
    monkeypatch.setenv("JOB_TIMEOUT_SECONDS", "30")
    with pytest.raises(ValueError):
        Settings.from_env()


def test_unknown_backoff_is_rejected(monkeypatch):
    monkeypatch.setenv("RETRY_BACKOFF", "linear")
    with pytest.raises(ValueError):
        Settings.from_env()


def test_exponential_backoff_is_capped():
    policy = RetryPolicy(backoff="exponential", base_delay=15, max_delay=100, jitter=0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [15, 30, 60, 100]


def test_fixed_backoff_with_jitter_stays_in_range():
    policy = RetryPolicy(backoff="fixed", base_delay=10, jitter=0.5)
    for attempt in range(1, 6):
        assert 10 <= policy.delay_for(attempt) <= 15


def test_structured_logs_reach_stdlib_handlers(caplog):
    setup_logging("INFO", json_logs=True)
    logger = get_logger("deferflow.tests.logging")

    with caplog.at_level(logging.INFO, logger="deferflow.tests.logging"):
        logger.info("settings_loaded", job_timeout=25)
        logger.debug("too_chatty")

    [record] = [r for r in caplog.records if r.name == "deferflow.tests.logging"]
    event = json.loads(record.getMessage())
    assert event["event"] == "settings_loaded"
    assert event["job_timeout"] == 25
    assert event["level"] == "info"
