from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Callable, Optional, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from aggregation import AggregationEngine, EntityKey, entities_of, ledger_total
from audit import AuditEvent, AuditSink, notify
from config import Settings, get_settings
from database import Store
from errors import (
    ConcurrencyConflict,
    InvalidAmount,
    InvalidInput,
    UnknownAccount,
    UnknownEntity,
)
from locking import AccountLocks, run_with_retry
from models import (
    Account,
    AccountStatus,
    AttributionAxis,
    Batch,
    Customer,
    EntityType,
    InvoiceEntity,
    SnapshotType,
    SpendingRecord,
    SpendingSnapshot,
)
from periods import Clock, Period, day_bounds, last_n_days, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

AXIS_ENTITY = {
    AttributionAxis.invoice: EntityType.invoice,
    AttributionAxis.customer: EntityType.customer,
    AttributionAxis.batch: EntityType.batch,
}

AXIS_SNAPSHOT = {
    AttributionAxis.invoice: SnapshotType.mi_change,
    AttributionAxis.customer: SnapshotType.mc_change,
}

ENTITY_MODELS = {
    EntityType.account: Account,
    EntityType.customer: Customer,
    EntityType.invoice: InvoiceEntity,
    EntityType.batch: Batch,
}


def locked_account(session: Session, account_id: int) -> Account:
    account = session.scalar(
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if account is None:
        raise UnknownAccount(account_id)
    return account


def require_entity(session: Session, entity_type: EntityType, entity_id: int):
    entity = session.get(ENTITY_MODELS[entity_type], entity_id)
    if entity is None:
        if entity_type == EntityType.account:
            raise UnknownAccount(entity_id)
        raise UnknownEntity(entity_type.value, entity_id)
    return entity


def check_period(period: Optional[Period]) -> None:
    if period is not None and period.start > period.end:
        raise InvalidInput("Start date must be before end date")


def scope_condition(entity_type: EntityType, entity_id: int):
    """Ledger rows counted for an entity under its *current* attribution."""
    if entity_type == EntityType.account:
        return SpendingRecord.account_id == entity_id
    if entity_type == EntityType.customer:
        return Account.current_customer_id == entity_id
    if entity_type == EntityType.invoice:
        return Account.current_invoice_id == entity_id
    return Account.batch_id == entity_id


class LedgerComponent:
    def __init__(
        self,
        store: Store,
        *,
        settings: Optional[Settings] = None,
        locks: Optional[AccountLocks] = None,
        clock: Optional[Clock] = None,
        audit: Optional[AuditSink] = None,
    ) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.locks = locks or AccountLocks(self.settings.lock_timeout_secs)
        self.clock = clock or utc_now
        self.audit = audit

    def _run(self, label: str, operation: Callable[[], T]) -> T:
        return run_with_retry(
            operation,
            attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay_secs,
            label=label,
        )


@dataclass(frozen=True)
class SpendWrite:
    record: SpendingRecord
    delta_cents: int
    drift_cents: int = 0


class LedgerService(LedgerComponent):
    def record_spend(
        self,
        account_id: int,
        spending_date: date,
        amount_cents: int,
        currency: str,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> SpendingRecord:
        if amount_cents is None or amount_cents < 0:
            raise InvalidAmount("Spending amount cannot be negative")
        currency_code = (currency or "").strip().upper()
        if len(currency_code) != 3:
            raise InvalidInput("Currency must be a 3-letter code")
        default_start, default_end = day_bounds(spending_date)
        period_start = period_start or default_start
        period_end = period_end or default_end
        if period_start > period_end:
            raise InvalidInput("Period start must not be after period end")

        def _write() -> SpendWrite:
            with self.locks.hold([account_id]):
                try:
                    with self.store.session_scope() as session:
                        return self._upsert(
                            session,
                            account_id,
                            spending_date,
                            amount_cents,
                            currency_code,
                            period_start,
                            period_end,
                        )
                except IntegrityError as exc:
                    raise ConcurrencyConflict(
                        f"Concurrent write for account {account_id} on {spending_date}"
                    ) from exc

        write = self._run("record_spend", _write)
        logger.info(
            f"spend_recorded: account_id={account_id} date={spending_date} "
            f"amount_cents={amount_cents} delta_cents={write.delta_cents}"
        )
        if write.drift_cents:
            logger.warning(
                f"consistency_violation: account_id={account_id} "
                f"drift_cents={write.drift_cents} (left for reconciliation)"
            )
            notify(
                self.audit,
                AuditEvent(
                    "consistency_violation",
                    EntityType.account.value,
                    account_id,
                    {"drift_cents": write.drift_cents},
                ),
            )
        return write.record

    def _upsert(
        self,
        session: Session,
        account_id: int,
        spending_date: date,
        amount_cents: int,
        currency: str,
        period_start: datetime,
        period_end: datetime,
    ) -> SpendWrite:
        account = locked_account(session, account_id)
        record = session.scalar(
            select(SpendingRecord)
            .where(
                SpendingRecord.account_id == account_id,
                SpendingRecord.spending_date == spending_date,
            )
            .with_for_update()
        )
        old_amount = record.amount_cents if record else 0
        if record is None:
            record = SpendingRecord(account_id=account_id, spending_date=spending_date)
            session.add(record)
        record.amount_cents = amount_cents
        record.currency = currency
        record.period_start = period_start
        record.period_end = period_end
        record.invoice_id = account.current_invoice_id
        record.customer_id = account.current_customer_id
        account.last_synced_at = self.clock()
        session.flush()

        engine = AggregationEngine(session)
        delta = amount_cents - old_amount
        engine.apply_delta(account, delta)
        session.flush()

        drift = 0
        if self.settings.verify_on_write:
            measured = engine.account_drift(account)
            if abs(measured) > self.settings.consistency_tolerance_cents:
                drift = measured
        return SpendWrite(record=record, delta_cents=delta, drift_cents=drift)

    def records_for_account(
        self, account_id: int, period: Optional[Period] = None
    ) -> list[SpendingRecord]:
        check_period(period)
        with self.store.session_scope() as session:
            require_entity(session, EntityType.account, account_id)
            stmt = (
                select(SpendingRecord)
                .where(SpendingRecord.account_id == account_id)
                .order_by(SpendingRecord.spending_date)
            )
            if period is not None:
                stmt = stmt.where(
                    SpendingRecord.spending_date.between(period.start, period.end)
                )
            return list(session.scalars(stmt).all())

    def aggregate_spend(self, account_id: int) -> int:
        with self.store.session_scope() as session:
            require_entity(session, EntityType.account, account_id)
            return ledger_total(session, account_id)


class SnapshotRecorder:
    """Writes cumulative-spend checkpoints inside the caller's transaction."""

    def __init__(self, session: Session, clock: Optional[Clock] = None) -> None:
        self.session = session
        self.clock = clock or utc_now

    def capture(
        self,
        account: Account,
        snapshot_type: SnapshotType,
        prior_invoice_id: Optional[int],
        prior_customer_id: Optional[int],
    ) -> SpendingSnapshot:
        if snapshot_type == SnapshotType.daily_final:
            raise InvalidInput("Daily snapshots are taken with capture_daily_final")
        self.session.flush()
        prior = (
            prior_invoice_id
            if snapshot_type == SnapshotType.mi_change
            else prior_customer_id
        )
        # Spend is only attributed to an entity while the account points at one.
        cumulative = ledger_total(self.session, account.id) if prior is not None else 0
        taken_at = self.clock()
        snapshot = SpendingSnapshot(
            account_id=account.id,
            spending_date=taken_at.date(),
            cumulative_amount_cents=cumulative,
            snapshot_at=taken_at,
            snapshot_type=snapshot_type,
            invoice_id=prior_invoice_id,
            customer_id=prior_customer_id,
        )
        self.session.add(snapshot)
        self.session.flush()
        return snapshot

    def capture_daily_final(
        self, account: Account, day: date
    ) -> tuple[SpendingSnapshot, bool]:
        existing = self.session.scalar(
            select(SpendingSnapshot).where(
                SpendingSnapshot.account_id == account.id,
                SpendingSnapshot.snapshot_type == SnapshotType.daily_final,
                SpendingSnapshot.spending_date == day,
            )
        )
        if existing is not None:
            return existing, False
        cumulative = int(
            self.session.execute(
                select(func.coalesce(func.sum(SpendingRecord.amount_cents), 0)).where(
                    SpendingRecord.account_id == account.id,
                    SpendingRecord.spending_date <= day,
                )
            ).scalar_one()
            or 0
        )
        snapshot = SpendingSnapshot(
            account_id=account.id,
            spending_date=day,
            cumulative_amount_cents=cumulative,
            snapshot_at=datetime.combine(day, time.max),
            snapshot_type=SnapshotType.daily_final,
            invoice_id=account.current_invoice_id,
            customer_id=account.current_customer_id,
        )
        self.session.add(snapshot)
        self.session.flush()
        return snapshot, True


@dataclass(frozen=True)
class DailyCloseResult:
    day: date
    created: int
    existing: int


class SnapshotService(LedgerComponent):
    def list_snapshots(
        self,
        *,
        account_id: Optional[int] = None,
        day: Optional[date] = None,
        snapshot_type: Optional[SnapshotType] = None,
        page: int = 1,
        limit: int = 50,
    ) -> tuple[list[SpendingSnapshot], int]:
        if page < 1 or limit < 1:
            raise InvalidInput("Page and limit must be positive")
        with self.store.session_scope() as session:
            conditions = []
            if account_id is not None:
                require_entity(session, EntityType.account, account_id)
                conditions.append(SpendingSnapshot.account_id == account_id)
            if day is not None:
                conditions.append(SpendingSnapshot.spending_date == day)
            if snapshot_type is not None:
                conditions.append(SpendingSnapshot.snapshot_type == snapshot_type)
            total = session.execute(
                select(func.count(SpendingSnapshot.id)).where(*conditions)
            ).scalar_one()
            rows = session.scalars(
                select(SpendingSnapshot)
                .where(*conditions)
                .order_by(SpendingSnapshot.snapshot_at.desc(), SpendingSnapshot.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).all()
            return list(rows), int(total or 0)

    def close_day(self, day: date) -> DailyCloseResult:
        with self.store.session_scope() as session:
            account_ids = list(
                session.scalars(select(Account.id).order_by(Account.id)).all()
            )

        created = existing = 0
        size = max(1, self.settings.reconcile_batch_size)
        for offset in range(0, len(account_ids), size):
            chunk = account_ids[offset : offset + size]

            def _close_chunk(chunk: list[int] = chunk) -> tuple[int, int]:
                made = seen = 0
                with self.locks.hold(chunk):
                    try:
                        with self.store.session_scope() as session:
                            recorder = SnapshotRecorder(session, self.clock)
                            for account_id in chunk:
                                account = session.get(Account, account_id)
                                if account is None:
                                    continue
                                _, was_created = recorder.capture_daily_final(
                                    account, day
                                )
                                if was_created:
                                    made += 1
                                else:
                                    seen += 1
                    except IntegrityError as exc:
                        # Another process closed the same day first; the retry
                        # finds its rows and counts them as existing.
                        raise ConcurrencyConflict(
                            f"Concurrent daily close for {day}"
                        ) from exc
                return made, seen

            made, seen = self._run("close_day", _close_chunk)
            created += made
            existing += seen

        logger.info(f"daily_close: day={day} created={created} existing={existing}")
        return DailyCloseResult(day=day, created=created, existing=existing)


@dataclass(frozen=True)
class RelinkResult:
    account_id: int
    axis: AttributionAxis
    previous_id: Optional[int]
    current_id: Optional[int]
    changed: bool
    snapshot_id: Optional[int] = None
    affected_entities: int = 0


@dataclass(frozen=True)
class BulkRelinkResult:
    axis: AttributionAxis
    target_id: Optional[int]
    changed: int
    unchanged: int
    snapshots: int
    affected_entities: int


@dataclass(frozen=True)
class BulkStatusResult:
    status: AccountStatus
    changed: int
    unchanged: int
    affected_entities: int


class RelinkingCoordinator(LedgerComponent):
    """Moves accounts between invoice entities, customers and batches.

    Every change follows the same order inside one transaction: snapshot the
    cumulative spend under the prior attribution, move the pointer, then
    recompute (never decrement) the counters of both the prior and the new
    entity.
    """

    def relink(
        self, account_id: int, axis: AttributionAxis, new_entity_id: Optional[int]
    ) -> RelinkResult:
        axis = AttributionAxis(axis)

        def _op() -> RelinkResult:
            with self.locks.hold([account_id]):
                with self.store.session_scope() as session:
                    result, affected = self._relink_one(
                        session, account_id, axis, new_entity_id
                    )
                    if not result.changed:
                        return result
                    AggregationEngine(session).recompute_many(affected)
                    return RelinkResult(
                        account_id=result.account_id,
                        axis=result.axis,
                        previous_id=result.previous_id,
                        current_id=result.current_id,
                        changed=True,
                        snapshot_id=result.snapshot_id,
                        affected_entities=len(affected),
                    )

        result = self._run("relink", _op)
        if result.changed:
            logger.info(
                f"relink: account_id={account_id} axis={axis.value} "
                f"from={result.previous_id} to={result.current_id}"
            )
            notify(
                self.audit,
                AuditEvent(
                    f"relink_{axis.value}",
                    EntityType.account.value,
                    account_id,
                    {"from": result.previous_id, "to": result.current_id},
                ),
            )
        return result

    def bulk_relink(
        self,
        account_ids: list[int],
        axis: AttributionAxis,
        new_entity_id: Optional[int],
    ) -> BulkRelinkResult:
        axis = AttributionAxis(axis)
        ids = sorted(set(account_ids))

        def _op() -> BulkRelinkResult:
            changed = unchanged = snapshots = 0
            affected: set[EntityKey] = set()
            with self.locks.hold(ids):
                with self.store.session_scope() as session:
                    for account_id in ids:
                        result, keys = self._relink_one(
                            session, account_id, axis, new_entity_id
                        )
                        if result.changed:
                            changed += 1
                            snapshots += 1 if result.snapshot_id else 0
                            affected |= keys
                        else:
                            unchanged += 1
                    AggregationEngine(session).recompute_many(affected)
            return BulkRelinkResult(
                axis=axis,
                target_id=new_entity_id,
                changed=changed,
                unchanged=unchanged,
                snapshots=snapshots,
                affected_entities=len(affected),
            )

        result = self._run("bulk_relink", _op)
        logger.info(
            f"bulk_relink: axis={axis.value} target={new_entity_id} "
            f"changed={result.changed} unchanged={result.unchanged}"
        )
        if result.changed:
            notify(
                self.audit,
                AuditEvent(
                    f"bulk_relink_{axis.value}",
                    EntityType.account.value,
                    "BULK",
                    {"ids": ids, "to": new_entity_id, "changed": result.changed},
                ),
            )
        return result

    def _relink_one(
        self,
        session: Session,
        account_id: int,
        axis: AttributionAxis,
        new_entity_id: Optional[int],
    ) -> tuple[RelinkResult, set[EntityKey]]:
        account = locked_account(session, account_id)
        current = account.pointer_for(axis)
        if current == new_entity_id:
            return (
                RelinkResult(account_id, axis, current, current, changed=False),
                set(),
            )

        entity_type = AXIS_ENTITY[axis]
        if new_entity_id is None and axis == AttributionAxis.batch:
            raise InvalidInput("An account must always belong to a batch")
        if new_entity_id is not None:
            require_entity(session, entity_type, new_entity_id)

        snapshot_id = None
        if axis in AXIS_SNAPSHOT:
            snapshot = SnapshotRecorder(session, self.clock).capture(
                account,
                AXIS_SNAPSHOT[axis],
                account.current_invoice_id,
                account.current_customer_id,
            )
            snapshot_id = snapshot.id

        if axis == AttributionAxis.invoice:
            account.current_invoice_id = new_entity_id
        elif axis == AttributionAxis.customer:
            account.current_customer_id = new_entity_id
        else:
            account.batch_id = new_entity_id
        session.flush()

        affected = {
            (entity_type, entity_id)
            for entity_id in (current, new_entity_id)
            if entity_id is not None
        }
        return (
            RelinkResult(
                account_id, axis, current, new_entity_id, True, snapshot_id
            ),
            affected,
        )

    def bulk_set_status(
        self, account_ids: list[int], status: AccountStatus
    ) -> BulkStatusResult:
        status = AccountStatus(status)
        ids = sorted(set(account_ids))

        def _op() -> BulkStatusResult:
            changed = unchanged = 0
            affected: set[EntityKey] = set()
            with self.locks.hold(ids):
                with self.store.session_scope() as session:
                    for account_id in ids:
                        account = locked_account(session, account_id)
                        if account.status == status:
                            unchanged += 1
                            continue
                        account.status = status
                        affected |= entities_of(account)
                        changed += 1
                    session.flush()
                    AggregationEngine(session).recompute_many(affected)
            return BulkStatusResult(
                status=status,
                changed=changed,
                unchanged=unchanged,
                affected_entities=len(affected),
            )

        result = self._run("bulk_set_status", _op)
        logger.info(
            f"bulk_status: status={status.value} changed={result.changed} "
            f"unchanged={result.unchanged}"
        )
        if result.changed:
            notify(
                self.audit,
                AuditEvent(
                    "bulk_status",
                    EntityType.account.value,
                    "BULK",
                    {"ids": ids, "status": status.value},
                ),
            )
        return result

    def unlinked_accounts(self, axis: AttributionAxis) -> list[Account]:
        axis = AttributionAxis(axis)
        if axis == AttributionAxis.invoice:
            pointer = Account.current_invoice_id
        elif axis == AttributionAxis.customer:
            pointer = Account.current_customer_id
        else:
            raise InvalidInput("Accounts are never detached from a batch")
        with self.store.session_scope() as session:
            return list(
                session.scalars(
                    select(Account)
                    .where(pointer.is_(None), Account.status == AccountStatus.active)
                    .order_by(Account.created_at.desc(), Account.id.desc())
                ).all()
            )


@dataclass(frozen=True)
class DailyPoint:
    day: date
    amount_cents: int


@dataclass(frozen=True)
class EntitySummary:
    entity_type: EntityType
    entity_id: int
    period: Period
    total_cents: int
    record_count: int
    account_count: int
    daily: list[DailyPoint] = field(default_factory=list)


@dataclass(frozen=True)
class AccountSpend:
    account_id: int
    name: str
    currency: str
    total_cents: int


@dataclass(frozen=True)
class AttributedSpend:
    axis: AttributionAxis
    entity_id: int
    as_of: datetime
    total_cents: int
    account_ids: list[int]


class SummaryService(LedgerComponent):
    """Read-only reporting composed from ledger rows and current attribution.

    Nothing here reads a cached counter, so a report stays correct while a
    cache is stale and waiting for reconciliation.
    """

    def entity_summary(
        self, entity_type: EntityType, entity_id: int, period: Period
    ) -> EntitySummary:
        entity_type = EntityType(entity_type)
        check_period(period)
        condition = scope_condition(entity_type, entity_id)
        with self.store.session_scope() as session:
            require_entity(session, entity_type, entity_id)
            rows = session.execute(
                select(
                    SpendingRecord.spending_date,
                    func.sum(SpendingRecord.amount_cents),
                    func.count(SpendingRecord.id),
                )
                .join(Account, Account.id == SpendingRecord.account_id)
                .where(
                    condition,
                    SpendingRecord.spending_date.between(period.start, period.end),
                )
                .group_by(SpendingRecord.spending_date)
                .order_by(SpendingRecord.spending_date)
            ).all()
            if entity_type == EntityType.account:
                account_count = 1
            else:
                account_count = int(
                    session.execute(
                        select(func.count(Account.id)).where(condition)
                    ).scalar_one()
                    or 0
                )

        daily = [DailyPoint(day=row[0], amount_cents=int(row[1] or 0)) for row in rows]
        return EntitySummary(
            entity_type=entity_type,
            entity_id=entity_id,
            period=period,
            total_cents=sum(point.amount_cents for point in daily),
            record_count=sum(int(row[2] or 0) for row in rows),
            account_count=account_count,
            daily=daily,
        )

    def global_chart(
        self, days: int = 7, *, today: Optional[date] = None
    ) -> tuple[int, list[DailyPoint]]:
        try:
            period = last_n_days(days, today=today or self.clock().date())
        except ValueError as exc:
            raise InvalidInput(str(exc)) from exc
        with self.store.session_scope() as session:
            totals = dict(
                session.execute(
                    select(
                        SpendingRecord.spending_date,
                        func.sum(SpendingRecord.amount_cents),
                    )
                    .where(
                        SpendingRecord.spending_date.between(period.start, period.end)
                    )
                    .group_by(SpendingRecord.spending_date)
                ).all()
            )
        points = [
            DailyPoint(day=day, amount_cents=int(totals.get(day) or 0))
            for day in period.days()
        ]
        return sum(point.amount_cents for point in points), points

    def top_accounts(
        self, limit: int = 10, period: Optional[Period] = None
    ) -> list[AccountSpend]:
        check_period(period)
        total = func.sum(SpendingRecord.amount_cents).label("total")
        stmt = (
            select(Account.id, Account.name, Account.currency, total)
            .join(SpendingRecord, SpendingRecord.account_id == Account.id)
            .group_by(Account.id, Account.name, Account.currency)
            .order_by(total.desc(), Account.id)
            .limit(limit)
        )
        if period is not None:
            stmt = stmt.where(
                SpendingRecord.spending_date.between(period.start, period.end)
            )
        with self.store.session_scope() as session:
            return [
                AccountSpend(
                    account_id=row.id,
                    name=row.name,
                    currency=row.currency,
                    total_cents=int(row.total or 0),
                )
                for row in session.execute(stmt).all()
            ]

    def attributed_spend_as_of(
        self, axis: AttributionAxis, entity_id: int, as_of: datetime
    ) -> AttributedSpend:
        """Spend the entity's counter carried at ``as_of``.

        The attribution in force at ``as_of`` is the prior attribution of the
        first change snapshot taken after it, or the current pointer when the
        account has not been re-linked since. Counters follow current
        attribution, so an attributed account contributes its whole ledger
        total up to that day.
        """
        axis = AttributionAxis(axis)
        if axis not in AXIS_SNAPSHOT:
            raise InvalidInput("Historical attribution exists for invoice and customer")
        snapshot_type = AXIS_SNAPSHOT[axis]
        prior_column = (
            SpendingSnapshot.invoice_id
            if axis == AttributionAxis.invoice
            else SpendingSnapshot.customer_id
        )
        pointer = (
            Account.current_invoice_id
            if axis == AttributionAxis.invoice
            else Account.current_customer_id
        )

        with self.store.session_scope() as session:
            require_entity(session, AXIS_ENTITY[axis], entity_id)
            candidates = set(
                session.scalars(select(Account.id).where(pointer == entity_id)).all()
            )
            candidates |= set(
                session.scalars(
                    select(SpendingSnapshot.account_id).where(
                        SpendingSnapshot.snapshot_type == snapshot_type,
                        prior_column == entity_id,
                    )
                ).all()
            )

            total = 0
            attributed: list[int] = []
            for account_id in sorted(candidates):
                account = session.get(Account, account_id)
                following = session.scalar(
                    select(SpendingSnapshot)
                    .where(
                        SpendingSnapshot.account_id == account_id,
                        SpendingSnapshot.snapshot_type == snapshot_type,
                        SpendingSnapshot.snapshot_at > as_of,
                    )
                    .order_by(SpendingSnapshot.snapshot_at, SpendingSnapshot.id)
                    .limit(1)
                )
                if following is not None:
                    holder = (
                        following.invoice_id
                        if axis == AttributionAxis.invoice
                        else following.customer_id
                    )
                else:
                    holder = account.pointer_for(axis)
                if holder != entity_id:
                    continue
                attributed.append(account_id)
                total += int(
                    session.execute(
                        select(
                            func.coalesce(func.sum(SpendingRecord.amount_cents), 0)
                        ).where(
                            SpendingRecord.account_id == account_id,
                            SpendingRecord.spending_date <= as_of.date(),
                        )
                    ).scalar_one()
                    or 0
                )

        return AttributedSpend(
            axis=axis,
            entity_id=entity_id,
            as_of=as_of,
            total_cents=total,
            account_ids=attributed,
        )
