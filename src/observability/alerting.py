import logging
import threading
from collections import OrderedDict, deque

from src.models.delivery import DeadLetterAlert, DeliveryRecord
from src.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class AlertManager:
    """Forwards dead-letter alerts and watches the rolling failure rate.

    ``callback`` receives one dict per alert; delivering it over email,
    Slack or SMS is the callback's business.
    """

    def __init__(
        self,
        metrics: MetricsCollector,
        threshold: float = 0.10,
        callback=None,
        max_history: int = 1000,
    ):
        self.metrics = metrics
        self.threshold = threshold
        self.callback = callback
        self._fired = False
        # Bounded so a long-running scheduler does not accumulate alerts.
        self._alerts: deque[dict] = deque(maxlen=max_history)
        self._dead_lettered: OrderedDict[tuple, None] = OrderedDict()
        self._max_history = max_history
        self._lock = threading.Lock()

    def dead_letter(
        self, record: DeliveryRecord, reason: str = "max_attempts_exceeded"
    ) -> dict | None:
        """Emit the alert for a record that just reached dead_letter.

        ``reason`` is "operator" when the record was dead-lettered by hand.
        Returns None if this dead-lettering was already reported; a record
        requeued and dead-lettered again is reported again.
        """
        key = (record.id, record.completed_at)
        with self._lock:
            if key in self._dead_lettered:
                return None
            self._dead_lettered[key] = None
            while len(self._dead_lettered) > self._max_history:
                self._dead_lettered.popitem(last=False)

        alert = DeadLetterAlert(
            delivery_id=record.id,
            target_url=record.target_url,
            attempts=record.attempts,
            last_error=record.last_error,
        ).as_dict()
        alert["reason"] = reason
        if reason == "operator":
            alert["message"] = (
                f"Webhook {record.id} to {record.target_url} dead-lettered by an "
                f"operator after {record.attempts} attempts"
            )
        else:
            alert["message"] = (
                f"Webhook {record.id} to {record.target_url} failed after "
                f"{record.attempts} attempts (last error: {record.last_error})"
            )
        logger.error(alert["message"])
        self._emit(alert)
        return alert

    def check(self) -> dict | None:
        """Check if failure rate exceeds threshold. Returns alert dict or None."""
        rate = self.metrics.failure_rate()
        total = self.metrics.total_in_window()
        failures = self.metrics.failure_count_in_window()

        if total == 0:
            return None

        if rate > self.threshold:
            if self._fired:
                return None  # Already fired, don't repeat

            alert = {
                "type": "webhook_failure_rate",
                "failure_rate": rate,
                "threshold": self.threshold,
                "total_deliveries": total,
                "failed_deliveries": failures,
                "message": (
                    f"Webhook failure rate {rate:.1%} exceeds "
                    f"threshold {self.threshold:.1%} "
                    f"({failures}/{total} deliveries failed)"
                ),
            }
            self._fired = True
            logger.warning(alert["message"])
            self._emit(alert)
            return alert

        # Rate is back below threshold, reset fire-once
        self._fired = False
        return None

    def _emit(self, alert: dict) -> None:
        with self._lock:
            self._alerts.append(alert)
        if self.callback is None:
            return
        try:
            self.callback(alert)
        except Exception:
            logger.exception("Alert callback failed for %s", alert["type"])

    def get_alerts(self, alert_type: str | None = None) -> list[dict]:
        with self._lock:
            if alert_type is None:
                return list(self._alerts)
            return [a for a in self._alerts if a["type"] == alert_type]

    def reset(self) -> None:
        with self._lock:
            self._fired = False
            self._alerts.clear()
            self._dead_lettered.clear()
