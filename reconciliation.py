from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from aggregation import AggregationEngine, CounterChange, EntityKey, entities_of
from audit import AuditEvent, notify
from errors import ConsistencyViolation, Unavailable
from locking import RETRYABLE_ERRORS
from models import (
    Account,
    Batch,
    Customer,
    EntityType,
    InvoiceEntity,
    SpendingRecord,
)
from periods import Period
from services import LedgerComponent, check_period, locked_account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileEntry:
    entity_type: EntityType
    entity_id: int
    field: str
    old_value: int
    new_value: int
    corrected: bool

    @classmethod
    def from_change(cls, change: CounterChange, corrected: bool) -> "ReconcileEntry":
        return cls(
            change.entity_type,
            change.entity_id,
            change.field,
            change.old_value,
            change.new_value,
            corrected,
        )


@dataclass(frozen=True)
class ReconcileFailure:
    entity_type: EntityType
    entity_id: int
    error: str


@dataclass
class ReconcileReport:
    dry_run: bool = False
    checked: int = 0
    entries: list[ReconcileEntry] = field(default_factory=list)
    failures: list[ReconcileFailure] = field(default_factory=list)
    chunks_total: int = 0
    chunks_done: int = 0
    cancelled: bool = False

    @property
    def drifted(self) -> int:
        return len(self.entries)

    def merge(self, other: "ReconcileReport") -> None:
        self.checked += other.checked
        self.entries.extend(other.entries)
        self.failures.extend(other.failures)


@dataclass
class CorrectionResult:
    job: str
    records_touched: int = 0
    accounts_touched: int = 0
    entries: list[ReconcileEntry] = field(default_factory=list)
    failures: list[ReconcileFailure] = field(default_factory=list)
    chunks_total: int = 0
    chunks_done: int = 0
    cancelled: bool = False

    def merge(self, other: "CorrectionResult") -> None:
        self.records_touched += other.records_touched
        self.accounts_touched += other.accounts_touched
        self.entries.extend(other.entries)
        self.failures.extend(other.failures)


class ReconciliationService(LedgerComponent):
    """Rebuilds cached counters from the ledger and runs corrective jobs.

    Every run converges to the same state: counters are recomputed from
    ledger rows and current attribution, never adjusted relative to their
    previous value, so running twice (or interleaved with writes) is safe.
    """

    def reconcile_all(
        self,
        *,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReconcileReport:
        report = ReconcileReport(dry_run=dry_run)
        with self.store.session_scope() as session:
            account_keys = [
                (EntityType.account, account_id)
                for account_id in session.scalars(
                    select(Account.id).order_by(Account.id)
                ).all()
            ]
            entity_keys: list[EntityKey] = []
            for entity_type, model in (
                (EntityType.customer, Customer),
                (EntityType.invoice, InvoiceEntity),
                (EntityType.batch, Batch),
            ):
                entity_keys.extend(
                    (entity_type, entity_id)
                    for entity_id in session.scalars(
                        select(model.id).order_by(model.id)
                    ).all()
                )

        # Accounts first so a reader never sees entities fresher than accounts.
        for keys in (account_keys, entity_keys):
            self._run_phase(keys, report, dry_run, cancel_event)
            if report.cancelled:
                break

        logger.info(
            f"reconcile_all: dry_run={dry_run} checked={report.checked} "
            f"drifted={report.drifted} failures={len(report.failures)} "
            f"chunks={report.chunks_done}/{report.chunks_total} "
            f"cancelled={report.cancelled}"
        )
        notify(
            self.audit,
            AuditEvent(
                "reconcile_all",
                "system",
                None,
                {
                    "dry_run": dry_run,
                    "checked": report.checked,
                    "drifted": report.drifted,
                    "failures": len(report.failures),
                    "cancelled": report.cancelled,
                },
            ),
        )
        return report

    def _run_phase(
        self,
        keys: list[EntityKey],
        report: ReconcileReport,
        dry_run: bool,
        cancel_event: Optional[threading.Event],
    ) -> None:
        chunks = self._chunked(keys)
        report.chunks_total += len(chunks)
        guard = threading.Lock()

        def _work(chunk: list[EntityKey]) -> None:
            try:
                partial = self._run(
                    "reconcile_chunk", lambda: self._reconcile_chunk(chunk, dry_run)
                )
            except Unavailable as exc:
                partial = ReconcileReport(dry_run=dry_run)
                partial.failures.extend(
                    ReconcileFailure(entity_type, entity_id, str(exc))
                    for entity_type, entity_id in chunk
                )
            with guard:
                report.merge(partial)
                report.chunks_done += 1
            logger.debug(
                f"reconcile_chunk: size={len(chunk)} checked={partial.checked} "
                f"drifted={partial.drifted} failures={len(partial.failures)}"
            )

        if self._fan_out(chunks, _work, cancel_event):
            report.cancelled = True

    def _chunked(self, items: list) -> list[list]:
        size = max(1, self.settings.reconcile_batch_size)
        return [items[offset : offset + size] for offset in range(0, len(items), size)]

    def _fan_out(
        self,
        chunks: list[list],
        work: Callable[[list], None],
        cancel_event: Optional[threading.Event],
    ) -> bool:
        """Run ``work`` per chunk on the worker pool; True when cancelled.

        Cancellation is only observed before a chunk starts, so every chunk
        either commits as a whole or never begins.
        """
        skipped = threading.Event()

        def _guarded(chunk: list) -> None:
            if cancel_event is not None and cancel_event.is_set():
                skipped.set()
                return
            work(chunk)

        workers = max(1, self.settings.reconcile_concurrency)
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_guarded, chunk) for chunk in chunks]
            for future in as_completed(futures):
                future.result()
        return skipped.is_set()

    def _reconcile_chunk(
        self, chunk: list[EntityKey], dry_run: bool
    ) -> ReconcileReport:
        partial = ReconcileReport(dry_run=dry_run)
        account_ids = [
            entity_id for entity_type, entity_id in chunk
            if entity_type == EntityType.account
        ]
        with self.locks.hold(account_ids):
            with self.store.session_scope() as session:
                engine = AggregationEngine(session)
                for entity_type, entity_id in chunk:
                    try:
                        with session.begin_nested():
                            changes = engine.recompute_entity(
                                entity_type, entity_id, dry_run=dry_run
                            )
                    except RETRYABLE_ERRORS:
                        raise
                    except Exception as exc:
                        logger.exception(
                            f"reconcile_row_failed: {entity_type.value}={entity_id}"
                        )
                        partial.failures.append(
                            ReconcileFailure(entity_type, entity_id, str(exc))
                        )
                        continue
                    partial.checked += 1
                    partial.entries.extend(
                        ReconcileEntry.from_change(change, corrected=not dry_run)
                        for change in changes
                        if change.changed
                    )
        return partial

    def reconcile_entity(
        self, entity_type: EntityType, entity_id: int, *, dry_run: bool = False
    ) -> ReconcileReport:
        entity_type = EntityType(entity_type)
        held = [entity_id] if entity_type == EntityType.account else []

        def _op() -> list[CounterChange]:
            with self.locks.hold(held):
                with self.store.session_scope() as session:
                    return AggregationEngine(session).recompute_entity(
                        entity_type, entity_id, dry_run=dry_run
                    )

        changes = self._run("reconcile_entity", _op)
        report = ReconcileReport(dry_run=dry_run, checked=1, chunks_total=1, chunks_done=1)
        report.entries.extend(
            ReconcileEntry.from_change(change, corrected=not dry_run)
            for change in changes
            if change.changed
        )
        logger.info(
            f"reconcile_entity: {entity_type.value}={entity_id} "
            f"dry_run={dry_run} drifted={report.drifted}"
        )
        if report.entries:
            notify(
                self.audit,
                AuditEvent(
                    "reconcile_entity",
                    entity_type.value,
                    entity_id,
                    {"dry_run": dry_run, "drifted": report.drifted},
                ),
            )
        return report

    def verify(self) -> ReconcileReport:
        """Dry-run reconcile that raises when any counter is outside tolerance."""
        report = self.reconcile_all(dry_run=True)
        tolerance = self.settings.consistency_tolerance_cents
        drifts = [
            (
                entry.entity_type.value,
                entry.entity_id,
                entry.field,
                entry.old_value,
                entry.new_value,
            )
            for entry in report.entries
            if abs(entry.new_value - entry.old_value) > tolerance
        ]
        if drifts:
            raise ConsistencyViolation(drifts)
        return report

    # Corrective jobs

    def shift_dates(
        self, days: int, *, cancel_event: Optional[threading.Event] = None
    ) -> CorrectionResult:
        if days == 0:
            return CorrectionResult("shift_dates")
        offset = timedelta(days=days)
        # Walk each account in the direction of travel so no row lands on a
        # day that another row of the same account has not left yet.
        ordering = (
            SpendingRecord.spending_date.desc()
            if days > 0
            else SpendingRecord.spending_date.asc()
        )

        def _mutate(session: Session, account: Account) -> int:
            records = session.scalars(
                select(SpendingRecord)
                .where(SpendingRecord.account_id == account.id)
                .order_by(ordering)
            ).all()
            for record in records:
                record.spending_date = record.spending_date + offset
                record.period_start = record.period_start + offset
                record.period_end = record.period_end + offset
                session.flush()
            return len(records)

        return self._correct(
            "shift_dates",
            self._accounts_with_records(),
            _mutate,
            {"days": days},
            cancel_event,
        )

    def align_dates_to(
        self, anchor: date, *, cancel_event: Optional[threading.Event] = None
    ) -> CorrectionResult:
        with self.store.session_scope() as session:
            latest = session.execute(
                select(func.max(SpendingRecord.spending_date))
            ).scalar_one()
        if latest is None or latest == anchor:
            return CorrectionResult("align_dates_to")
        return self.shift_dates((anchor - latest).days, cancel_event=cancel_event)

    def normalize_currencies(
        self, *, cancel_event: Optional[threading.Event] = None
    ) -> CorrectionResult:
        def _mutate(session: Session, account: Account) -> int:
            currency = (account.currency or "").strip().upper()
            if not currency:
                return 0
            records = session.scalars(
                select(SpendingRecord).where(
                    SpendingRecord.account_id == account.id,
                    SpendingRecord.currency != currency,
                )
            ).all()
            for record in records:
                record.currency = currency
            session.flush()
            return len(records)

        return self._correct(
            "normalize_currencies",
            self._accounts_with_records(),
            _mutate,
            {},
            cancel_event,
        )

    def purge_records(
        self,
        period: Period,
        account_ids: Optional[Iterable[int]] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> CorrectionResult:
        check_period(period)
        scope = list(account_ids) if account_ids is not None else None

        def _mutate(session: Session, account: Account) -> int:
            result = session.execute(
                delete(SpendingRecord)
                .where(
                    SpendingRecord.account_id == account.id,
                    SpendingRecord.spending_date.between(period.start, period.end),
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

        return self._correct(
            "purge_records",
            self._accounts_with_records(period, scope),
            _mutate,
            {"start": period.start.isoformat(), "end": period.end.isoformat()},
            cancel_event,
        )

    def _accounts_with_records(
        self,
        period: Optional[Period] = None,
        account_ids: Optional[list[int]] = None,
    ) -> list[int]:
        stmt = select(SpendingRecord.account_id).distinct()
        if period is not None:
            stmt = stmt.where(
                SpendingRecord.spending_date.between(period.start, period.end)
            )
        if account_ids is not None:
            stmt = stmt.where(SpendingRecord.account_id.in_(account_ids))
        with self.store.session_scope() as session:
            return sorted(session.scalars(stmt).all())

    def _correct(
        self,
        job: str,
        account_ids: list[int],
        mutate: Callable[[Session, Account], int],
        details: dict,
        cancel_event: Optional[threading.Event],
    ) -> CorrectionResult:
        result = CorrectionResult(job)
        chunks = self._chunked(sorted(set(account_ids)))
        result.chunks_total = len(chunks)
        guard = threading.Lock()

        def _work(chunk: list[int]) -> None:
            try:
                partial = self._run(
                    job, lambda: self._correct_chunk(job, chunk, mutate)
                )
            except Unavailable as exc:
                partial = CorrectionResult(job)
                partial.failures.extend(
                    ReconcileFailure(EntityType.account, account_id, str(exc))
                    for account_id in chunk
                )
            with guard:
                result.merge(partial)
                result.chunks_done += 1

        if self._fan_out(chunks, _work, cancel_event):
            result.cancelled = True

        logger.info(
            f"{job}: records={result.records_touched} "
            f"accounts={result.accounts_touched} "
            f"counters_changed={len(result.entries)} "
            f"failures={len(result.failures)} "
            f"chunks={result.chunks_done}/{result.chunks_total} "
            f"cancelled={result.cancelled}"
        )
        if chunks:
            notify(
                self.audit,
                AuditEvent(
                    job,
                    "system",
                    None,
                    {
                        **details,
                        "records": result.records_touched,
                        "accounts": result.accounts_touched,
                        "failures": len(result.failures),
                        "cancelled": result.cancelled,
                    },
                ),
            )
        return result

    def _correct_chunk(
        self,
        job: str,
        chunk: list[int],
        mutate: Callable[[Session, Account], int],
    ) -> CorrectionResult:
        partial = CorrectionResult(job)
        entity_keys: set[EntityKey] = set()
        with self.locks.hold(chunk):
            with self.store.session_scope() as session:
                engine = AggregationEngine(session)
                for account_id in chunk:
                    try:
                        with session.begin_nested():
                            account = locked_account(session, account_id)
                            touched = mutate(session, account)
                            changes = engine.recompute_entity(
                                EntityType.account, account_id
                            )
                            owners = entities_of(account)
                    except RETRYABLE_ERRORS:
                        raise
                    except Exception as exc:
                        logger.exception(f"{job}_row_failed: account={account_id}")
                        partial.failures.append(
                            ReconcileFailure(EntityType.account, account_id, str(exc))
                        )
                        continue
                    partial.records_touched += touched
                    partial.accounts_touched += 1
                    partial.entries.extend(
                        ReconcileEntry.from_change(change, corrected=True)
                        for change in changes
                        if change.changed
                    )
                    entity_keys |= owners

                for entity_type, entity_id in sorted(entity_keys):
                    try:
                        with session.begin_nested():
                            changes = engine.recompute_entity(entity_type, entity_id)
                    except RETRYABLE_ERRORS:
                        raise
                    except Exception as exc:
                        logger.exception(
                            f"{job}_row_failed: {entity_type.value}={entity_id}"
                        )
                        partial.failures.append(
                            ReconcileFailure(entity_type, entity_id, str(exc))
                        )
                        continue
                    partial.entries.extend(
                        ReconcileEntry.from_change(change, corrected=True)
                        for change in changes
                        if change.changed
                    )
        return partial
