"""Integration tests for the SQL-backed delivery store."""

import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone

import pytest

from src.models.delivery import DeliveryStatus, ErrorKind, Outcome, Response
from src.models.webhook import TestInvocation
from src.store.exceptions import (
    DeliveryNotFoundError,
    InvalidTransitionError,
    StoreUnavailableError,
)
from src.store.store import DeliveryStore, create_db_engine
from src.utils.crypto import canonical_payload


pytestmark = pytest.mark.integration

URL = "https://partner.example/webhook"
T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _ok(ms: int = 40) -> Outcome:
    return Outcome(success=True, response=Response(200, '{"ok":true}', ms))


def _fail(kind: ErrorKind = ErrorKind.SERVER_ERROR, code: int | None = 500) -> Outcome:
    return Outcome(success=False, response=Response(code, "boom", 15), error=kind, detail="boom")


def _claim_one(store: DeliveryStore, now: datetime = T0):
    claimed = store.claim_due(1, now)
    assert len(claimed) == 1
    return claimed[0]


class TestEnqueue:
    def test_new_record_is_pending_and_due(self, store):
        record = store.enqueue(URL, {"status": "completed"}, "s3cret", max_attempts=3, now=T0)
        assert record.status == DeliveryStatus.PENDING
        assert record.attempts == 0
        assert record.max_attempts == 3
        assert record.next_retry_at is None
        assert record.last_response is None
        assert record.created_at == T0
        assert record.event_id.startswith("evt_")
        assert record.payload["event_id"] == record.event_id

    def test_payload_event_id_kept(self, store):
        record = store.enqueue(URL, {"event_id": "evt_abc"}, "s")
        assert record.event_id == "evt_abc"
        assert store.find_by_event_id("evt_abc").id == record.id

    def test_caller_payload_not_mutated(self, store):
        payload = {"status": "completed"}
        store.enqueue(URL, payload, "s")
        assert payload == {"status": "completed"}

    @pytest.mark.parametrize("max_attempts", [0, -1])
    def test_invalid_max_attempts(self, store, max_attempts):
        with pytest.raises(ValueError):
            store.enqueue(URL, {}, "s", max_attempts=max_attempts)

    def test_record_survives_store_restart(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'durable.db'}"
        first = DeliveryStore.from_url(url)
        record = first.enqueue(URL, {"a": 1}, "s")
        first.dispose()

        second = DeliveryStore.from_url(url)
        try:
            reloaded = second.get(record.id)
            assert reloaded.payload == record.payload
            assert reloaded.secret == "s"
        finally:
            second.dispose()


class TestClaimDue:
    def test_claim_moves_to_in_progress(self, store):
        record = store.enqueue(URL, {}, "s", now=T0)
        claimed = _claim_one(store)
        assert claimed.id == record.id
        assert claimed.status == DeliveryStatus.IN_PROGRESS
        assert claimed.claimed_at == T0
        assert store.claim_due(10, T0) == []

    def test_respects_limit_and_creation_order(self, store):
        ids = [store.enqueue(URL, {"n": i}, "s", now=T0 + timedelta(seconds=i)).id for i in range(5)]
        claimed = store.claim_due(3, T0 + timedelta(minutes=1))
        assert [r.id for r in claimed] == ids[:3]

    def test_future_retry_not_due(self, store, backoff):
        store.enqueue(URL, {}, "s", now=T0)
        claimed = _claim_one(store)
        updated = store.record_outcome(claimed.id, _fail(), retry_delay=backoff, now=T0)
        assert updated.next_retry_at > T0
        assert store.claim_due(10, T0 + timedelta(seconds=1)) == []
        assert len(store.claim_due(10, updated.next_retry_at)) == 1

    def test_concurrent_claimers_never_share_a_record(self, store):
        for i in range(40):
            store.enqueue(URL, {"n": i}, "s", now=T0)

        results: list[list[str]] = []
        lock = threading.Lock()
        barrier = threading.Barrier(4)

        def claimer():
            barrier.wait()
            mine = []
            while True:
                batch = store.claim_due(3, T0)
                if not batch:
                    break
                mine.extend(r.id for r in batch)
            with lock:
                results.append(mine)

        threads = [threading.Thread(target=claimer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        all_ids = [i for r in results for i in r]
        assert len(all_ids) == 40
        assert len(set(all_ids)) == 40


class TestRecordOutcome:
    def test_success_is_terminal(self, store):
        store.enqueue(URL, {}, "s", now=T0)
        claimed = _claim_one(store)
        updated = store.record_outcome(claimed.id, _ok(), now=T0)
        assert updated.status == DeliveryStatus.SUCCEEDED
        assert updated.attempts == 1
        assert updated.completed_at == T0
        assert updated.last_error is None
        assert updated.last_response.status_code == 200
        assert updated.claimed_at is None

    def test_failure_schedules_retry(self, store, backoff):
        store.enqueue(URL, {}, "s", max_attempts=3, now=T0)
        claimed = _claim_one(store)
        updated = store.record_outcome(claimed.id, _fail(), retry_delay=backoff, now=T0)
        assert updated.status == DeliveryStatus.PENDING
        assert updated.attempts == 1
        assert updated.last_error == "server_error"
        assert updated.last_attempt_at == T0
        delay = (updated.next_retry_at - T0).total_seconds()
        assert 30 <= delay <= 60

    def test_exhaustion_dead_letters(self, store):
        store.enqueue(URL, {}, "s", max_attempts=2, now=T0)
        for _ in range(2):
            claimed = _claim_one(store)
            updated = store.record_outcome(claimed.id, _fail(ErrorKind.TIMEOUT, None), now=T0)
        assert updated.status == DeliveryStatus.DEAD_LETTER
        assert updated.attempts == 2
        assert updated.next_retry_at is None
        assert updated.last_error == "timeout"
        assert updated.last_response.status_code is None

    def test_requires_in_progress(self, store):
        record = store.enqueue(URL, {}, "s")
        with pytest.raises(InvalidTransitionError):
            store.record_outcome(record.id, _ok())

    def test_stale_claim_rejected(self, store):
        store.enqueue(URL, {}, "s", now=T0)
        first = _claim_one(store)
        store.reclaim_stuck(60, now=T0 + timedelta(minutes=5))
        second = _claim_one(store, T0 + timedelta(minutes=5))

        with pytest.raises(InvalidTransitionError):
            store.record_outcome(first.id, _ok(), claimed_at=first.claimed_at)
        updated = store.record_outcome(second.id, _ok(), claimed_at=second.claimed_at)
        assert updated.attempts == 1

    def test_response_body_truncated(self, tmp_path):
        store = DeliveryStore.from_url(f"sqlite:///{tmp_path / 'x.db'}", response_body_limit=10)
        try:
            store.enqueue(URL, {}, "s", now=T0)
            claimed = _claim_one(store)
            outcome = Outcome(success=True, response=Response(200, "y" * 100, 5))
            assert store.record_outcome(claimed.id, outcome).last_response.body == "y" * 10
        finally:
            store.dispose()

    def test_unknown_delivery(self, store):
        with pytest.raises(DeliveryNotFoundError):
            store.record_outcome("missing", _ok())


class TestReclaimStuck:
    def test_reclaims_only_past_timeout(self, store):
        store.enqueue(URL, {}, "s", now=T0)
        claimed = _claim_one(store)
        assert store.reclaim_stuck(600, now=T0 + timedelta(seconds=599)) == []
        assert store.reclaim_stuck(600, now=T0 + timedelta(seconds=600)) == [claimed.id]

        record = store.get(claimed.id)
        assert record.status == DeliveryStatus.PENDING
        assert record.attempts == 0
        assert record.last_error == "abandoned"
        assert record.claimed_at is None


class TestOperatorActions:
    def test_force_dead_letter_pending(self, store):
        record = store.enqueue(URL, {}, "s")
        updated = store.force_dead_letter(record.id, now=T0)
        assert updated.status == DeliveryStatus.DEAD_LETTER
        assert updated.completed_at == T0
        assert store.claim_due(10) == []

    def test_force_dead_letter_rejects_succeeded(self, store):
        store.enqueue(URL, {}, "s", now=T0)
        claimed = _claim_one(store)
        store.record_outcome(claimed.id, _ok())
        with pytest.raises(InvalidTransitionError):
            store.force_dead_letter(claimed.id)

    def test_requeue_gives_fresh_budget(self, store):
        store.enqueue(URL, {}, "s", max_attempts=1, now=T0)
        claimed = _claim_one(store)
        store.record_outcome(claimed.id, _fail(), now=T0)

        requeued = store.requeue(claimed.id)
        assert requeued.status == DeliveryStatus.PENDING
        assert requeued.attempts == 0
        assert requeued.completed_at is None
        assert store.claim_due(10)[0].id == claimed.id

    def test_requeue_keeps_last_attempt_trail(self, store, caplog):
        store.enqueue(URL, {}, "s", max_attempts=2, now=T0)
        for _ in range(2):
            claimed = _claim_one(store)
            store.record_outcome(claimed.id, _fail(), now=T0)

        with caplog.at_level(logging.INFO, logger="src.store"):
            requeued = store.requeue(claimed.id)

        assert requeued.last_error == "server_error"
        assert requeued.last_attempt_at == T0
        assert requeued.last_response.status_code == 500
        assert "requeued after 2 spent attempts" in caplog.text

    def test_requeue_rejects_pending(self, store):
        record = store.enqueue(URL, {}, "s")
        with pytest.raises(InvalidTransitionError):
            store.requeue(record.id)

    def test_list_filters(self, store):
        a = store.enqueue(URL, {}, "s", now=T0)
        b = store.enqueue("https://other.example/hook", {}, "s", now=T0 + timedelta(seconds=1))
        store.force_dead_letter(a.id)

        assert [r.id for r in store.list_deliveries(status=DeliveryStatus.DEAD_LETTER)] == [a.id]
        assert [r.id for r in store.list_deliveries(target_url=URL)] == [a.id]
        assert [r.id for r in store.list_deliveries()] == [b.id, a.id]
        assert len(store.list_deliveries(limit=1)) == 1

    def test_stats(self, store):
        store.enqueue(URL, {}, "s", now=T0)
        store.enqueue(URL, {}, "s", now=T0 + timedelta(seconds=1))
        first = _claim_one(store)
        store.record_outcome(first.id, _ok(ms=100), now=T0)

        stats = store.stats()
        assert stats["total"] == 2
        assert stats["by_status"]["succeeded"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["by_status"]["dead_letter"] == 0
        assert stats["success_rate"] == 0.5
        assert stats["avg_response_time_ms"] == 100.0

    def test_get_unknown(self, store):
        with pytest.raises(DeliveryNotFoundError):
            store.get("missing")


class TestInvocationHistory:
    def test_saved_and_listed_newest_first(self, store):
        for i, kind in enumerate(["test", "replay", "test"]):
            store.save_invocation(TestInvocation(
                id=str(uuid.uuid4()),
                kind=kind,
                target_url=URL,
                payload={"n": i},
                success=True,
                response_status=200,
                response_body="ok",
                response_time_ms=10,
                error_message=None,
                created_at=T0 + timedelta(seconds=i),
            ))
        history = store.list_invocations()
        assert [h.payload["n"] for h in history] == [2, 1, 0]
        assert [h.payload["n"] for h in store.list_invocations(kind="test")] == [2, 0]
        assert store.list_deliveries() == []


class TestUnavailableStore:
    def test_enqueue_surfaces_store_unavailable(self, tmp_path):
        missing_dir = tmp_path / "does-not-exist"
        store = DeliveryStore(create_db_engine(f"sqlite:///{missing_dir / 'x.db'}"))
        try:
            with pytest.raises(StoreUnavailableError):
                store.enqueue(URL, {}, "s")
        finally:
            store.dispose()


class TestPayloadNormalisation:
    def test_non_json_values_stored_as_signed(self, store):
        stamp = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        record = store.enqueue(URL, {"timestamp": stamp, "status": "completed"}, "s")
        assert record.payload["timestamp"] == str(stamp)
        assert store.get(record.id).payload == record.payload
        assert canonical_payload(record.payload) == canonical_payload(
            {"timestamp": stamp, "status": "completed", "event_id": record.event_id}
        )

    def test_invocation_payload_normalised(self, store):
        saved = store.save_invocation(TestInvocation(
            id=str(uuid.uuid4()),
            kind="test",
            target_url=URL,
            payload={"timestamp": T0},
            success=True,
            response_status=200,
            response_body="ok",
            response_time_ms=1,
            error_message=None,
            created_at=T0,
        ))
        assert saved.payload == {"timestamp": str(T0)}
