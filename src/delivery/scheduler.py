import logging
import threading
from functools import partial
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from src.delivery.executor import DeliveryExecutor
from src.delivery.retry import BackoffPolicy
from src.models.delivery import DeliveryRecord, DeliveryStatus, ErrorKind, Outcome, Response
from src.observability.alerting import AlertManager
from src.store.exceptions import InvalidTransitionError
from src.store.store import DeliveryStore, utcnow

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    reclaimed: int = 0
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0


class RetryScheduler:
    """Claims due deliveries, runs them through the executor, and files the
    outcomes.

    A tick is safe to run late, twice, or from two processes at once:
    claiming is a conditional update in the store and attempts only grow
    when an executor call actually happened.
    """

    def __init__(
        self,
        store: DeliveryStore,
        executor: DeliveryExecutor,
        backoff: BackoffPolicy | None = None,
        alerts: AlertManager | None = None,
        batch_size: int = 50,
        parallelism: int = 10,
        interval_seconds: float = 30,
        stuck_timeout_seconds: float = 600,
    ):
        if batch_size < 1 or parallelism < 1:
            raise ValueError("batch_size and parallelism must be positive")
        self.store = store
        self.executor = executor
        self.backoff = backoff or BackoffPolicy()
        self.alerts = alerts
        self.batch_size = batch_size
        self.parallelism = parallelism
        self.interval_seconds = interval_seconds
        self.stuck_timeout_seconds = stuck_timeout_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @classmethod
    def from_settings(cls, settings, store: DeliveryStore, alerts: AlertManager | None = None):
        return cls(
            store=store,
            executor=DeliveryExecutor(
                timeout_seconds=settings.request_timeout_seconds,
                response_body_limit=settings.response_body_limit,
            ),
            backoff=BackoffPolicy(
                base=settings.backoff_base_seconds,
                cap=settings.backoff_cap_seconds,
            ),
            alerts=alerts,
            batch_size=settings.batch_size,
            parallelism=settings.parallelism,
            interval_seconds=settings.scheduler_interval_seconds,
            stuck_timeout_seconds=settings.stuck_timeout_seconds,
        )

    def tick(self, now: datetime | None = None) -> TickSummary:
        """Run one scheduling pass."""
        now = now or utcnow()
        summary = TickSummary()

        if self.stuck_timeout_seconds > 0:
            summary.reclaimed = len(self.store.reclaim_stuck(self.stuck_timeout_seconds, now))

        claimed = self.store.claim_due(self.batch_size, now)
        summary.claimed = len(claimed)
        if not claimed:
            return summary

        workers = min(self.parallelism, len(claimed))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="webhook-delivery") as pool:
            results = list(pool.map(partial(self._deliver, now=now), claimed))

        for record in results:
            if record is None:
                continue
            if record.status == DeliveryStatus.SUCCEEDED:
                summary.succeeded += 1
            elif record.status == DeliveryStatus.DEAD_LETTER:
                summary.dead_lettered += 1
            else:
                summary.retried += 1

        if self.alerts is not None:
            self.alerts.check()

        logger.info(
            "Tick: claimed=%d succeeded=%d retried=%d dead_lettered=%d reclaimed=%d",
            summary.claimed, summary.succeeded, summary.retried,
            summary.dead_lettered, summary.reclaimed,
        )
        return summary

    def _deliver(self, record: DeliveryRecord, now: datetime) -> DeliveryRecord | None:
        try:
            outcome = self.executor.execute(record)
        except Exception as e:
            # The executor classifies wire errors itself; anything else is a
            # bug, but the claim still has to be released with an attempt.
            logger.exception("Executor crashed on delivery %s", record.id)
            outcome = Outcome(
                success=False,
                response=Response(status_code=None, body=str(e), time_ms=0),
                error=ErrorKind.NETWORK_ERROR,
                detail=str(e),
            )

        # Backoff runs from when the attempt finished; a tick clock set ahead
        # of real time still wins.
        finished_at = max(now, utcnow())
        try:
            updated = self.store.record_outcome(
                record.id, outcome, retry_delay=self.backoff, now=finished_at,
                claimed_at=record.claimed_at,
            )
        except InvalidTransitionError as e:
            # Reclaimed by the watchdog while this attempt was in flight.
            logger.warning("Dropping outcome for delivery %s: %s", record.id, e)
            return None

        if self.alerts is not None:
            self.alerts.metrics.record(outcome)

        if updated.status == DeliveryStatus.SUCCEEDED:
            logger.info("Delivery %s succeeded on attempt %d", updated.id, updated.attempts)
        elif updated.status == DeliveryStatus.DEAD_LETTER:
            if self.alerts is not None:
                self.alerts.dead_letter(updated)
            else:
                logger.error(
                    "Delivery %s dead-lettered after %d attempts (%s)",
                    updated.id, updated.attempts, updated.last_error,
                )
        else:
            logger.warning(
                "Delivery %s attempt %d/%d failed (%s); next retry at %s",
                updated.id, updated.attempts, updated.max_attempts,
                updated.last_error, updated.next_retry_at.isoformat(),
            )
        return updated

    # ------------------------------------------------------------------
    # Timer loop
    # ------------------------------------------------------------------

    def run_forever(self) -> None:
        """Tick every ``interval_seconds`` until stop() is called."""
        logger.info("Retry scheduler started (interval=%ss)", self.interval_seconds)
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(self.interval_seconds)
        logger.info("Retry scheduler stopped")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name="webhook-retry-scheduler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
