from datetime import timedelta

import pytest

from app.core.enums import SyncErrorType
from app.core.utils import utcnow
from app.services.sync_queue.backoff import BackoffPolicy


def test_delay_doubles_per_attempt_without_jitter():
    policy = BackoffPolicy(base_seconds=30, max_seconds=300, jitter_seconds=0)
    assert [policy.delay_seconds(n) for n in (1, 2, 3, 4)] == [30, 60, 120, 240]


def test_delay_is_capped():
    policy = BackoffPolicy(base_seconds=30, max_seconds=300, jitter_seconds=0)
    assert policy.delay_seconds(10) == 300


def test_rate_limit_uses_longer_base():
    policy = BackoffPolicy(base_seconds=30, rate_limit_base_seconds=120, max_seconds=300, jitter_seconds=0)
    assert policy.delay_seconds(1, SyncErrorType.RATE_LIMIT) == 120
    assert policy.delay_seconds(2, SyncErrorType.RATE_LIMIT) == 240


def test_retry_after_wins_when_longer():
    policy = BackoffPolicy(base_seconds=30, jitter_seconds=0)
    assert policy.delay_seconds(1, SyncErrorType.RATE_LIMIT, retry_after=900) == 900
    assert policy.delay_seconds(3, SyncErrorType.NETWORK, retry_after=5) == 120


def test_jitter_stays_within_bounds():
    policy = BackoffPolicy(base_seconds=10, max_seconds=300, jitter_seconds=2)
    for _ in range(50):
        assert 10 <= policy.delay_seconds(1) <= 12


def test_next_retry_at_is_relative_to_now():
    policy = BackoffPolicy(base_seconds=30, jitter_seconds=0)
    now = utcnow()
    assert policy.next_retry_at(2, now=now) == now + timedelta(seconds=60)


def test_from_settings(settings):
    policy = BackoffPolicy.from_settings(settings)
    assert policy.base_seconds == settings.SYNC_BACKOFF_BASE_SECONDS
    assert policy.jitter_seconds == settings.SYNC_BACKOFF_JITTER_SECONDS


@pytest.mark.parametrize("attempt", [0, -1])
def test_attempt_below_one_is_treated_as_first(attempt):
    policy = BackoffPolicy(base_seconds=30, jitter_seconds=0)
    assert policy.delay_seconds(attempt) == 30
