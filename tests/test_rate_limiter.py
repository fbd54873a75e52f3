"""Unit tests for the sliding-window rate limiter."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from gradesync.adapters.rate_limit import InMemoryWindowStore, SQLiteWindowStore
from gradesync.adapters.rate_limit.base import AbstractWindowStore, RateLimitWindow
from gradesync.core.config import DEFAULT_QUOTA_POLICIES, QuotaPolicy
from gradesync.core.errors import UnknownEndpointError, ValidationAppError
from gradesync.services.rate_limiter import Allowed, Denied, SlidingWindowRateLimiter


def _limiter(clock: Mock, store=None, policies=None) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(
        store or InMemoryWindowStore(),
        policies=policies if policies is not None else DEFAULT_QUOTA_POLICIES,
        clock=clock,
    )


def test_allows_up_to_limit_in_same_window() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(clock)

    results = [limiter.check("alice", "grades", 3, 1) for _ in range(3)]

    assert all(isinstance(r, Allowed) for r in results)
    assert [r.request_count for r in results] == [1, 2, 3]
    assert results[-1].remaining == 0
    assert results[0].reset_at == 1060.0


def test_blocks_when_over_limit() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(clock)

    limiter.check("alice", "grades", 2, 1)
    limiter.check("alice", "grades", 2, 1)
    clock.return_value = 1015.0

    blocked = limiter.check("alice", "grades", 2, 1)

    assert isinstance(blocked, Denied)
    assert blocked.allowed is False
    assert blocked.remaining == 0
    assert blocked.retry_after_seconds == 45


def test_window_slides_from_first_request_not_clock_boundary() -> None:
    clock = Mock(return_value=1030.0)
    limiter = _limiter(clock)

    assert limiter.check("alice", "grades", 1, 1).allowed is True

    # 1080 is past a minute boundary but inside the window opened at 1030
    clock.return_value = 1080.0
    assert limiter.check("alice", "grades", 1, 1).allowed is False

    clock.return_value = 1090.0
    assert limiter.check("alice", "grades", 1, 1).allowed is True


def test_retry_after_is_at_least_one_second() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(clock)
    limiter.check("alice", "grades", 1, 1)

    clock.return_value = 1059.75
    denied = limiter.check("alice", "grades", 1, 1)

    assert isinstance(denied, Denied)
    assert denied.retry_after_seconds == 1


def test_denied_requests_do_not_extend_the_window() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(clock)
    limiter.check("alice", "grades", 1, 1)

    for t in (1010.0, 1030.0, 1059.0):
        clock.return_value = t
        assert limiter.check("alice", "grades", 1, 1).allowed is False

    clock.return_value = 1060.0
    allowed = limiter.check("alice", "grades", 1, 1)
    assert isinstance(allowed, Allowed)
    assert allowed.request_count == 1


def test_isolated_by_actor_and_endpoint() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(clock)

    assert limiter.check("alice", "grades", 1, 1).allowed is True
    assert limiter.check("alice", "grades", 1, 1).allowed is False

    assert limiter.check("bob", "grades", 1, 1).allowed is True
    assert limiter.check("alice", "students", 1, 1).allowed is True


def test_bulk_import_quota_reports_time_left_in_window() -> None:
    clock = Mock(return_value=10_000.0)
    limiter = _limiter(clock)

    for i in range(10):
        clock.return_value = 10_000.0 + i * 60
        assert limiter.check_endpoint("alice", "import-students").allowed is True

    clock.return_value = 10_000.0 + 1200
    denied = limiter.check_endpoint("alice", "import-students")

    assert isinstance(denied, Denied)
    assert denied.limit == 10
    assert denied.retry_after_seconds == 3600 - 1200


def test_check_endpoint_uses_policy_table() -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(clock, policies={"export-data": QuotaPolicy(max_requests=2, window_minutes=5)})

    first = limiter.check_endpoint("alice", "export-data")
    assert isinstance(first, Allowed)
    assert first.limit == 2
    assert first.reset_at == 1300.0


def test_unknown_endpoint_raises() -> None:
    limiter = _limiter(Mock(return_value=1000.0))

    with pytest.raises(UnknownEndpointError) as exc_info:
        limiter.check_endpoint("alice", "launch-rockets")

    assert exc_info.value.code == "unknown_quota_endpoint"
    assert isinstance(exc_info.value, ValidationAppError)


def test_policies_property_returns_copy() -> None:
    limiter = _limiter(Mock(return_value=1000.0))

    limiter.policies.pop("bulk-grades")

    assert "bulk-grades" in limiter.policies


@pytest.mark.parametrize(
    "args",
    [
        ("", "grades", 1, 1),
        ("alice", "", 1, 1),
        ("alice", "grades", 0, 1),
        ("alice", "grades", 1, 0),
    ],
)
def test_invalid_check_args(args: tuple) -> None:
    limiter = _limiter(Mock(return_value=1000.0))

    with pytest.raises(ValidationAppError):
        limiter.check(*args)


def test_denies_after_window_keeps_being_superseded() -> None:
    store = Mock(spec=AbstractWindowStore)
    # every lookup sees a newer window than the one just tried
    windows = iter(RateLimitWindow("alice", "grades", 990.0 + i, 5) for i in range(10))
    store.find_current.side_effect = lambda *args, **kwargs: next(windows)
    store.try_increment.return_value = None
    limiter = _limiter(Mock(return_value=1000.0), store=store)

    decision = limiter.check("alice", "grades", 5, 1)

    assert isinstance(decision, Denied)
    assert store.try_increment.call_count == 3
    assert decision.retry_after_seconds == 54


@pytest.mark.parametrize("backend", ["memory", "sqlite"])
def test_concurrent_checks_never_exceed_limit(backend: str, tmp_path) -> None:
    store = InMemoryWindowStore() if backend == "memory" else SQLiteWindowStore(str(tmp_path / "rl.db"))
    limiter = _limiter(Mock(return_value=1000.0), store=store)

    with ThreadPoolExecutor(max_workers=16) as pool:
        decisions = list(pool.map(lambda _: limiter.check("alice", "bulk", 10, 60), range(50)))

    allowed = [d for d in decisions if d.allowed]
    assert len(allowed) == 10
    assert sorted(d.request_count for d in allowed) == list(range(1, 11))
    assert all(isinstance(d, Denied) for d in decisions if not d.allowed)


def test_purge_expired_uses_retention() -> None:
    clock = Mock(return_value=1000.0)
    store = InMemoryWindowStore()
    limiter = _limiter(clock, store=store)
    limiter.check("alice", "grades", 5, 1)
    clock.return_value = 5000.0
    limiter.check("bob", "grades", 5, 1)

    removed = limiter.purge_expired(retention_minutes=30)

    assert removed == 1
    assert store.count_windows() == 1
