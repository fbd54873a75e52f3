"""Tests for settings loading."""

import pytest
from pydantic import ValidationError

from gradesync.core.config import DEFAULT_QUOTA_POLICIES, QuotaPolicy, RateLimitSettings, Settings


def test_default_quota_policies() -> None:
    settings = Settings()

    assert settings.quota_policies == DEFAULT_QUOTA_POLICIES
    assert settings.quota_policies["bulk-grades"] == QuotaPolicy(max_requests=20, window_minutes=60)


def test_quota_policies_from_env(monkeypatch) -> None:
    monkeypatch.setenv("QUOTA_POLICIES", '{"bulk-grades": {"max_requests": 5, "window_minutes": 15}}')

    settings = Settings()

    assert settings.quota_policies == {"bulk-grades": QuotaPolicy(max_requests=5, window_minutes=15)}


def test_nested_settings_read_prefixed_env(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "sqlite")
    monkeypatch.setenv("LOG_FORMAT", "plain")

    settings = Settings()

    assert settings.rate_limit.backend == "sqlite"
    assert settings.log.format == "plain"


@pytest.mark.parametrize("kwargs", [{"max_requests": 0, "window_minutes": 60}, {"max_requests": 1, "window_minutes": 0}])
def test_quota_policy_rejects_non_positive(kwargs: dict) -> None:
    with pytest.raises(ValidationError):
        QuotaPolicy(**kwargs)


def test_retention_must_be_positive() -> None:
    with pytest.raises(ValidationError):
        RateLimitSettings(retention_minutes=0)
