"""Integration tests for RetryScheduler bookkeeping with a stubbed executor."""

from datetime import datetime, timedelta, timezone

import pytest

from src.delivery.retry import BackoffPolicy
from src.delivery.scheduler import RetryScheduler
from src.models.delivery import DeliveryStatus, ErrorKind, Outcome, Response


pytestmark = pytest.mark.integration

URL = "https://partner.example/webhook"


class _SlowFailingExecutor:
    """Fails every attempt and moves the scheduler's clock forward while doing it."""

    def __init__(self, clock: dict, duration: timedelta):
        self.clock = clock
        self.duration = duration

    def execute(self, record):
        self.clock["now"] += self.duration
        return Outcome(
            success=False,
            response=Response(status_code=503, body="", time_ms=9000),
            error=ErrorKind.SERVER_ERROR,
        )


class TestAttemptTiming:
    def test_backoff_counts_from_attempt_end(self, store, monkeypatch):
        tick_start = datetime.now(timezone.utc) + timedelta(hours=1)
        clock = {"now": tick_start}
        monkeypatch.setattr("src.delivery.scheduler.utcnow", lambda: clock["now"])
        scheduler = RetryScheduler(
            store=store,
            executor=_SlowFailingExecutor(clock, timedelta(seconds=9)),
            backoff=BackoffPolicy(base=30, cap=7200, jitter=False),
        )
        record = store.enqueue(URL, {"status": "completed"}, "s")

        scheduler.tick(tick_start)

        updated = store.get(record.id)
        assert updated.status == DeliveryStatus.PENDING
        assert updated.last_attempt_at == tick_start + timedelta(seconds=9)
        assert updated.next_retry_at == tick_start + timedelta(seconds=39)

    def test_clock_ahead_of_real_time_is_kept(self, store):
        class _Fail:
            def execute(self, record):
                return Outcome(
                    success=False, response=Response(500, "", 1), error=ErrorKind.SERVER_ERROR
                )

        scheduler = RetryScheduler(
            store=store, executor=_Fail(), backoff=BackoffPolicy(base=30, cap=7200, jitter=False)
        )
        record = store.enqueue(URL, {}, "s")
        future = datetime.now(timezone.utc) + timedelta(days=3)

        scheduler.tick(future)

        assert store.get(record.id).next_retry_at == future + timedelta(seconds=30)
