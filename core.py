from dataclasses import dataclass
from typing import Optional

from audit import AuditSink, LoggingAuditSink
from config import Settings
from database import Store
from locking import AccountLocks
from periods import Clock, utc_now
from reconciliation import ReconciliationService
from services import (
    LedgerService,
    RelinkingCoordinator,
    SnapshotService,
    SummaryService,
)


@dataclass
class Core:
    """Wires every service to one store, one lock table and one clock."""

    store: Store
    settings: Settings
    locks: AccountLocks
    clock: Clock
    ledger: LedgerService
    snapshots: SnapshotService
    relinking: RelinkingCoordinator
    summary: SummaryService
    reconciliation: ReconciliationService

    @classmethod
    def build(
        cls,
        store: Store,
        settings: Settings,
        *,
        clock: Optional[Clock] = None,
        audit: Optional[AuditSink] = None,
    ) -> "Core":
        locks = AccountLocks(settings.lock_timeout_secs)
        clock = clock or utc_now
        shared = dict(
            settings=settings,
            locks=locks,
            clock=clock,
            audit=audit if audit is not None else LoggingAuditSink(),
        )
        return cls(
            store=store,
            settings=settings,
            locks=locks,
            clock=clock,
            ledger=LedgerService(store, **shared),
            snapshots=SnapshotService(store, **shared),
            relinking=RelinkingCoordinator(store, **shared),
            summary=SummaryService(store, **shared),
            reconciliation=ReconciliationService(store, **shared),
        )

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "Core":
        store = Store.from_settings(settings)
        store.create_all()
        return cls.build(store, settings, **kwargs)
