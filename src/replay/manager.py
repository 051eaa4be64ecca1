import logging
import uuid

from src.delivery.executor import DeliveryExecutor
from src.models.delivery import DeliveryStatus, ErrorKind
from src.models.webhook import TestInvocation
from src.replay.templates import get_template
from src.store.exceptions import DeliveryNotFoundError, ReplaySourceNotFoundError
from src.store.store import DeliveryStore, utcnow
from src.utils.crypto import DEFAULT_TOLERANCE_SECONDS, SignatureCheck, verify_request

logger = logging.getLogger(__name__)

TEST_HEADER = "X-Webhook-Test"
REPLAY_HEADER = "X-Webhook-Replay"


class WebhookReplayManager:
    """Diagnostic sends that sit outside the retry lineage.

    Every call makes exactly one executor attempt, stores a TestInvocation
    for audit, and leaves DeliveryRecords untouched.
    """

    def __init__(
        self,
        executor: DeliveryExecutor,
        store: DeliveryStore,
        secret: str,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
    ):
        self.executor = executor
        self.store = store
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def test_deliver(self, target_url: str, payload: dict | str = "success") -> TestInvocation:
        """Send one test webhook.

        ``payload`` is either a dict or the name of a template
        ("success", "failed", "pending").
        """
        if isinstance(payload, str):
            payload = get_template(payload)
        return self._invoke("test", target_url, payload, self.secret, {TEST_HEADER: "true"})

    def replay(
        self,
        original_id: str,
        target_url: str,
        custom_payload: dict | None = None,
    ) -> TestInvocation:
        """Re-send a stored delivery's payload to ``target_url``.

        ``original_id`` is a delivery id or the payload's event id. The
        original's secret is reused so the partner can verify the signature
        as usual. ``custom_payload`` replaces the stored body.
        """
        original = self._find_original(original_id)

        payload = custom_payload if custom_payload is not None else original.payload
        headers = {REPLAY_HEADER: "true", "X-Event-ID": original.event_id}
        return self._invoke(
            "replay", target_url, payload, original.secret, headers, replay_of=original.id
        )

    def replay_dead_letters(self, target_url: str, limit: int = 100) -> dict[str, TestInvocation]:
        """Replay every dead-lettered delivery to ``target_url``.

        Returns a dict mapping delivery id to its replay invocation.
        """
        results = {}
        for record in self.store.list_deliveries(status=DeliveryStatus.DEAD_LETTER, limit=limit):
            results[record.id] = self.replay(record.id, target_url)
        return results

    def validate_callback(self, headers, body: bytes, secret: str | None = None) -> SignatureCheck:
        """Check a captured inbound callback's signature (debugger path)."""
        result = verify_request(secret or self.secret, headers, body, self.tolerance_seconds)
        if result is not SignatureCheck.VALID:
            logger.warning(
                "Captured callback rejected: %s (%s)",
                ErrorKind.SIGNATURE_INVALID.value, result.value,
            )
        return result

    def history(self, kind: str | None = None, limit: int = 20) -> list[TestInvocation]:
        return self.store.list_invocations(kind=kind, limit=limit)

    def _find_original(self, original_id: str):
        try:
            return self.store.get(original_id)
        except DeliveryNotFoundError:
            pass
        try:
            return self.store.find_by_event_id(original_id)
        except DeliveryNotFoundError:
            raise ReplaySourceNotFoundError(original_id) from None

    def _invoke(
        self,
        kind: str,
        target_url: str,
        payload: dict,
        secret: str,
        headers: dict,
        replay_of: str | None = None,
    ) -> TestInvocation:
        outcome = self.executor.send(target_url, payload, secret, headers)
        error_message = None
        if not outcome.success:
            error_message = outcome.error.value
            if outcome.detail:
                error_message = f"{error_message}: {outcome.detail}"

        invocation = TestInvocation(
            id=str(uuid.uuid4()),
            kind=kind,
            target_url=target_url,
            payload=payload,
            success=outcome.success,
            response_status=outcome.status_code,
            response_body=outcome.response.body,
            response_time_ms=outcome.elapsed_ms,
            error_message=error_message,
            created_at=utcnow(),
            replay_of=replay_of,
        )
        saved = self.store.save_invocation(invocation)
        logger.info(
            "%s webhook to %s: %s", kind.capitalize(), target_url,
            "ok" if outcome.success else error_message,
        )
        return saved
