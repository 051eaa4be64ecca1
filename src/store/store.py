import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable

from sqlalchemy import create_engine, event, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from src.models.delivery import DeliveryRecord, DeliveryStatus, ErrorKind, Outcome, Response
from src.models.webhook import TestInvocation
from src.store.exceptions import (
    DeliveryNotFoundError,
    InvalidTransitionError,
    StoreUnavailableError,
)
from src.store.schema import Base, DeliveryRow, TestInvocationRow
from src.utils.crypto import canonical_payload

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_RESPONSE_BODY_LIMIT = 1000

PENDING = DeliveryStatus.PENDING.value
IN_PROGRESS = DeliveryStatus.IN_PROGRESS.value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite connections get IMMEDIATE transactions.

    pysqlite's default deferred BEGIN lets two readers race to upgrade to
    a write lock, so SQLite transactions take the write lock up front and
    concurrent claimers queue on the busy timeout instead.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    engine = create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


class DeliveryStore:
    """Durable table of delivery lineages.

    All status changes go through conditional updates keyed on the current
    status, so concurrent schedulers need no shared in-process lock.
    """

    def __init__(self, engine: Engine, response_body_limit: int = DEFAULT_RESPONSE_BODY_LIMIT):
        self.engine = engine
        self.response_body_limit = response_body_limit
        self._sessions = sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, **kwargs) -> "DeliveryStore":
        store = cls(create_db_engine(database_url), **kwargs)
        store.create_schema()
        return store

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        target_url: str,
        payload: dict,
        secret: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        now: datetime | None = None,
    ) -> DeliveryRecord:
        """Create a pending delivery. Only fails if the store is unreachable.

        ``target_url`` and ``secret`` are captured as given; later partner
        changes never reach an existing record.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be a positive integer")
        if not target_url:
            raise ValueError("target_url is required")

        # Store exactly what gets signed; non-JSON values are stringified the
        # same way canonical_payload does it.
        body = json.loads(canonical_payload(payload))
        body.setdefault("event_id", f"evt_{uuid.uuid4().hex[:16]}")

        row = DeliveryRow(
            id=str(uuid.uuid4()),
            event_id=str(body["event_id"]),
            target_url=target_url,
            payload=body,
            secret=secret,
            status=PENDING,
            attempts=0,
            max_attempts=max_attempts,
            created_at=now or utcnow(),
        )
        with self._session() as session, session.begin():
            session.add(row)
            session.flush()
            record = _to_record(row)
        logger.info(
            "Enqueued delivery %s (event %s) to %s", record.id, record.event_id, target_url
        )
        return record

    # ------------------------------------------------------------------
    # Scheduler side
    # ------------------------------------------------------------------

    def claim_due(self, limit: int, now: datetime | None = None) -> list[DeliveryRecord]:
        """Move up to ``limit`` due records from pending to in_progress.

        A record is returned only if this call's conditional update won it.
        """
        now = now or utcnow()
        claimed: list[DeliveryRecord] = []
        with self._session() as session, session.begin():
            candidates = session.scalars(
                select(DeliveryRow.id)
                .where(
                    DeliveryRow.status == PENDING,
                    or_(DeliveryRow.next_retry_at.is_(None), DeliveryRow.next_retry_at <= now),
                )
                .order_by(DeliveryRow.created_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).all()

            for delivery_id in candidates:
                result = session.execute(
                    update(DeliveryRow)
                    .where(DeliveryRow.id == delivery_id, DeliveryRow.status == PENDING)
                    .values(status=IN_PROGRESS, claimed_at=now)
                )
                if result.rowcount == 1:
                    row = session.get(DeliveryRow, delivery_id, populate_existing=True)
                    claimed.append(_to_record(row))
        return claimed

    def record_outcome(
        self,
        delivery_id: str,
        outcome: Outcome,
        retry_delay: Callable[[int], float] | None = None,
        now: datetime | None = None,
        claimed_at: datetime | None = None,
    ) -> DeliveryRecord:
        """Write the result of one executed attempt.

        ``retry_delay(n)`` gives the seconds to wait after the n-th failed
        attempt; without it a retry is due immediately. Passing the
        ``claimed_at`` of the claim being reported rejects outcomes from a
        claim the watchdog has since reclaimed.
        """
        now = now or utcnow()
        with self._session() as session, session.begin():
            row = session.get(DeliveryRow, delivery_id)
            if row is None:
                raise DeliveryNotFoundError(delivery_id)
            if row.status != IN_PROGRESS or (
                claimed_at is not None and row.claimed_at != claimed_at
            ):
                raise InvalidTransitionError(delivery_id, row.status, "record outcome for")

            attempts = row.attempts + 1
            values = {
                "attempts": attempts,
                "last_attempt_at": now,
                "claimed_at": None,
                "response_status": outcome.response.status_code,
                "response_body": outcome.response.body[: self.response_body_limit],
                "response_time_ms": outcome.response.time_ms,
            }
            if outcome.success:
                values.update(
                    status=DeliveryStatus.SUCCEEDED.value,
                    next_retry_at=None,
                    completed_at=now,
                    last_error=None,
                )
            else:
                error = (outcome.error or ErrorKind.NETWORK_ERROR).value
                if attempts < row.max_attempts:
                    delay = retry_delay(attempts) if retry_delay else 0.0
                    values.update(
                        status=PENDING,
                        next_retry_at=now + timedelta(seconds=delay),
                        last_error=error,
                    )
                else:
                    values.update(
                        status=DeliveryStatus.DEAD_LETTER.value,
                        next_retry_at=None,
                        completed_at=now,
                        last_error=error,
                    )

            result = session.execute(
                update(DeliveryRow)
                .where(
                    DeliveryRow.id == delivery_id,
                    DeliveryRow.status == IN_PROGRESS,
                    DeliveryRow.attempts == row.attempts,
                )
                .values(**values)
            )
            if result.rowcount != 1:
                raise InvalidTransitionError(delivery_id, row.status, "record outcome for")
            row = session.get(DeliveryRow, delivery_id, populate_existing=True)
            record = _to_record(row)
        return record

    def reclaim_stuck(self, timeout_seconds: float, now: datetime | None = None) -> list[str]:
        """Return records stuck in_progress past ``timeout_seconds`` to pending.

        The abandoned attempt is not counted; ``last_error`` is set to
        ``abandoned`` so the reclaim is visible on the record.
        """
        now = now or utcnow()
        cutoff = now - timedelta(seconds=timeout_seconds)
        reclaimed = []
        with self._session() as session, session.begin():
            stuck = session.execute(
                select(DeliveryRow.id, DeliveryRow.attempts).where(
                    DeliveryRow.status == IN_PROGRESS,
                    DeliveryRow.claimed_at <= cutoff,
                )
            ).all()
            for delivery_id, attempts in stuck:
                result = session.execute(
                    update(DeliveryRow)
                    .where(DeliveryRow.id == delivery_id, DeliveryRow.status == IN_PROGRESS)
                    .values(
                        status=PENDING,
                        claimed_at=None,
                        next_retry_at=now if attempts > 0 else None,
                        last_error=ErrorKind.ABANDONED.value,
                    )
                )
                if result.rowcount == 1:
                    reclaimed.append(delivery_id)
        for delivery_id in reclaimed:
            logger.warning("Reclaimed delivery %s stuck in_progress since before %s",
                           delivery_id, cutoff.isoformat())
        return reclaimed

    # ------------------------------------------------------------------
    # Operator side
    # ------------------------------------------------------------------

    def get(self, delivery_id: str) -> DeliveryRecord:
        with self._session() as session:
            row = session.get(DeliveryRow, delivery_id)
            if row is None:
                raise DeliveryNotFoundError(delivery_id)
            return _to_record(row)

    def find_by_event_id(self, event_id: str) -> DeliveryRecord:
        """Most recent delivery carrying the given payload event id."""
        stmt = (
            select(DeliveryRow)
            .where(DeliveryRow.event_id == event_id)
            .order_by(DeliveryRow.created_at.desc())
            .limit(1)
        )
        with self._session() as session:
            row = session.scalars(stmt).first()
            if row is None:
                raise DeliveryNotFoundError(event_id)
            return _to_record(row)

    def list_deliveries(
        self,
        status: DeliveryStatus | None = None,
        target_url: str | None = None,
        limit: int = 100,
    ) -> list[DeliveryRecord]:
        stmt = select(DeliveryRow).order_by(DeliveryRow.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(DeliveryRow.status == status.value)
        if target_url is not None:
            stmt = stmt.where(DeliveryRow.target_url == target_url)
        with self._session() as session:
            return [_to_record(row) for row in session.scalars(stmt)]

    def force_dead_letter(self, delivery_id: str, now: datetime | None = None) -> DeliveryRecord:
        """Stop a waiting record from being retried again.

        The record may end with fewer than ``max_attempts`` attempts. The
        store emits no alert; callers forward it to
        ``AlertManager.dead_letter(record, reason="operator")``.
        """
        return self._transition(
            delivery_id,
            allowed=(PENDING, DeliveryStatus.FAILED.value),
            action="dead-letter",
            values={
                "status": DeliveryStatus.DEAD_LETTER.value,
                "next_retry_at": None,
                "completed_at": now or utcnow(),
            },
        )

    def requeue(self, delivery_id: str) -> DeliveryRecord:
        """Give a dead-lettered record a fresh attempt budget.

        ``attempts`` restarts at 0 so the attempts bound holds for the new
        budget. ``last_error``, ``last_attempt_at`` and the last response
        are kept, and the spent attempt count is logged.
        """
        previous = self.get(delivery_id)
        record = self._transition(
            delivery_id,
            allowed=(DeliveryStatus.DEAD_LETTER.value, DeliveryStatus.FAILED.value),
            action="requeue",
            values={
                "status": PENDING,
                "attempts": 0,
                "next_retry_at": None,
                "completed_at": None,
            },
        )
        logger.info(
            "Delivery %s requeued after %d spent attempts (last error: %s)",
            delivery_id, previous.attempts, previous.last_error,
        )
        return record

    def stats(self) -> dict:
        with self._session() as session:
            counts = dict(
                session.execute(
                    select(DeliveryRow.status, func.count()).group_by(DeliveryRow.status)
                ).all()
            )
            avg_ms = session.scalar(
                select(func.avg(DeliveryRow.response_time_ms)).where(
                    DeliveryRow.response_time_ms.is_not(None)
                )
            )
        by_status = {status.value: counts.get(status.value, 0) for status in DeliveryStatus}
        total = sum(by_status.values())
        succeeded = by_status[DeliveryStatus.SUCCEEDED.value]
        return {
            "total": total,
            "by_status": by_status,
            "success_rate": succeeded / total if total else 0.0,
            "avg_response_time_ms": float(avg_ms) if avg_ms is not None else 0.0,
        }

    # ------------------------------------------------------------------
    # Test & replay history
    # ------------------------------------------------------------------

    def save_invocation(self, invocation: TestInvocation) -> TestInvocation:
        body = invocation.response_body
        if body is not None:
            body = body[: self.response_body_limit]
        row = TestInvocationRow(
            id=invocation.id,
            kind=invocation.kind,
            replay_of=invocation.replay_of,
            target_url=invocation.target_url,
            payload=json.loads(canonical_payload(invocation.payload)),
            success=invocation.success,
            response_status=invocation.response_status,
            response_body=body,
            response_time_ms=invocation.response_time_ms,
            error_message=invocation.error_message,
            created_at=invocation.created_at,
        )
        with self._session() as session, session.begin():
            session.add(row)
            session.flush()
            saved = _to_invocation(row)
        return saved

    def list_invocations(self, kind: str | None = None, limit: int = 20) -> list[TestInvocation]:
        stmt = (
            select(TestInvocationRow)
            .order_by(TestInvocationRow.created_at.desc())
            .limit(limit)
        )
        if kind is not None:
            stmt = stmt.where(TestInvocationRow.kind == kind)
        with self._session() as session:
            return [_to_invocation(row) for row in session.scalars(stmt)]

    # ------------------------------------------------------------------

    def _transition(self, delivery_id: str, allowed: tuple, action: str, values: dict) -> DeliveryRecord:
        with self._session() as session, session.begin():
            row = session.get(DeliveryRow, delivery_id)
            if row is None:
                raise DeliveryNotFoundError(delivery_id)
            result = session.execute(
                update(DeliveryRow)
                .where(DeliveryRow.id == delivery_id, DeliveryRow.status.in_(allowed))
                .values(**values)
            )
            if result.rowcount != 1:
                raise InvalidTransitionError(delivery_id, row.status, action)
            row = session.get(DeliveryRow, delivery_id, populate_existing=True)
            record = _to_record(row)
        logger.info("Delivery %s: operator %s -> %s", delivery_id, action, record.status.value)
        return record

    def _session(self) -> Session:
        return _GuardedSession(self._sessions())


class _GuardedSession:
    """Context manager translating connection failures to StoreUnavailableError."""

    def __init__(self, session: Session):
        self._session = session

    def __enter__(self) -> Session:
        return self._session

    def __exit__(self, exc_type, exc, tb):
        self._session.close()
        if exc_type is not None and issubclass(exc_type, OperationalError):
            raise StoreUnavailableError(str(exc)) from exc
        return False


def _to_record(row: DeliveryRow) -> DeliveryRecord:
    response = None
    if row.last_attempt_at is not None:
        response = Response(
            status_code=row.response_status,
            body=row.response_body or "",
            time_ms=row.response_time_ms or 0,
        )
    return DeliveryRecord(
        id=row.id,
        event_id=row.event_id,
        target_url=row.target_url,
        payload=dict(row.payload),
        secret=row.secret,
        status=DeliveryStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        created_at=row.created_at,
        last_attempt_at=row.last_attempt_at,
        next_retry_at=row.next_retry_at,
        claimed_at=row.claimed_at,
        completed_at=row.completed_at,
        last_error=row.last_error,
        last_response=response,
    )


def _to_invocation(row: TestInvocationRow) -> TestInvocation:
    return TestInvocation(
        id=row.id,
        kind=row.kind,
        target_url=row.target_url,
        payload=dict(row.payload),
        success=row.success,
        response_status=row.response_status,
        response_body=row.response_body,
        response_time_ms=row.response_time_ms,
        error_message=row.error_message,
        created_at=row.created_at,
        replay_of=row.replay_of,
    )
