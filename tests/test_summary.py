from datetime import date, datetime

import pytest
from sqlalchemy.exc import IntegrityError

from audit import MemoryAuditSink
from config import Settings
from core import Core
from database import Store
from errors import InvalidInput, UnknownEntity
from models import (
    Account,
    AttributionAxis,
    Batch,
    Customer,
    EntityType,
    SnapshotType,
    SpendingSnapshot,
)
from periods import Period
from scheduler import SchedulerManager


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_core(clock: FakeClock) -> Core:
    settings = Settings(
        database_url="sqlite+pysqlite:///:memory:",
        timezone="UTC",
        retry_base_delay_secs=0,
        reconcile_concurrency=1,
        reconcile_batch_size=2,
    )
    store = Store.from_settings(settings)
    store.create_all()
    return Core.build(store, settings, clock=clock, audit=MemoryAuditSink())


def seed(core: Core) -> dict:
    with core.store.session_scope() as session:
        batch = Batch(name="B1")
        c1 = Customer(name="C1")
        c2 = Customer(name="C2")
        session.add_all([batch, c1, c2])
        session.flush()
        a1 = Account(external_id="A1", name="Alpha", batch_id=batch.id)
        a2 = Account(external_id="A2", name="Beta", batch_id=batch.id)
        session.add_all([a1, a2])
        session.flush()
        ids = {"batch": batch.id, "c1": c1.id, "c2": c2.id, "a1": a1.id, "a2": a2.id}
    core.reconciliation.reconcile_all()
    return ids


def test_entity_summary_uses_current_attribution() -> None:
    clock = FakeClock(datetime(2026, 3, 1, 12, 0))
    core = make_core(clock)
    ids = seed(core)
    core.relinking.relink(ids["a1"], AttributionAxis.customer, ids["c1"])
    core.ledger.record_spend(ids["a1"], date(2026, 3, 1), 100, "USD")
    core.ledger.record_spend(ids["a1"], date(2026, 3, 2), 50, "USD")
    core.ledger.record_spend(ids["a2"], date(2026, 3, 2), 70, "USD")

    c1 = core.summary.entity_summary(
        EntityType.customer,
        ids["c1"],
        Period("custom", date(2026, 3, 1), date(2026, 3, 31)),
    )
    batch = core.summary.entity_summary(
        EntityType.batch,
        ids["batch"],
        Period("custom", date(2026, 3, 2), date(2026, 3, 2)),
    )

    assert (c1.total_cents, c1.record_count, c1.account_count) == (150, 2, 1)
    assert [(p.day, p.amount_cents) for p in c1.daily] == [
        (date(2026, 3, 1), 100),
        (date(2026, 3, 2), 50),
    ]
    assert (batch.total_cents, batch.record_count, batch.account_count) == (120, 2, 2)

    core.relinking.relink(ids["a1"], AttributionAxis.customer, ids["c2"])
    moved = core.summary.entity_summary(
        EntityType.customer,
        ids["c1"],
        Period("custom", date(2026, 3, 1), date(2026, 3, 31)),
    )
    assert moved.total_cents == 0


def test_entity_summary_rejects_unknown_entity_and_bad_period() -> None:
    core = make_core(FakeClock(datetime(2026, 3, 1, 12, 0)))
    ids = seed(core)

    with pytest.raises(UnknownEntity):
        core.summary.entity_summary(
            EntityType.customer, 999, Period("all", date(1970, 1, 1), date(2026, 3, 1))
        )
    with pytest.raises(InvalidInput):
        core.summary.entity_summary(
            EntityType.account,
            ids["a1"],
            Period("custom", date(2026, 3, 2), date(2026, 3, 1)),
        )


def test_global_chart_fills_empty_days() -> None:
    core = make_core(FakeClock(datetime(2026, 3, 3, 12, 0)))
    ids = seed(core)
    core.ledger.record_spend(ids["a1"], date(2026, 3, 1), 10, "USD")
    core.ledger.record_spend(ids["a2"], date(2026, 3, 1), 5, "USD")
    core.ledger.record_spend(ids["a1"], date(2026, 3, 3), 7, "USD")

    total, points = core.summary.global_chart(3)

    assert total == 22
    assert [(p.day, p.amount_cents) for p in points] == [
        (date(2026, 3, 1), 15),
        (date(2026, 3, 2), 0),
        (date(2026, 3, 3), 7),
    ]
    with pytest.raises(InvalidInput):
        core.summary.global_chart(0)


def test_top_accounts_ranks_by_ledger_spend() -> None:
    core = make_core(FakeClock(datetime(2026, 3, 3, 12, 0)))
    ids = seed(core)
    core.ledger.record_spend(ids["a1"], date(2026, 3, 1), 10, "USD")
    core.ledger.record_spend(ids["a2"], date(2026, 3, 1), 40, "USD")

    ranked = core.summary.top_accounts(limit=5)

    assert [(row.name, row.total_cents) for row in ranked] == [("Beta", 40), ("Alpha", 10)]
    assert len(core.summary.top_accounts(limit=1)) == 1


def test_attributed_spend_as_of_walks_change_snapshots() -> None:
    clock = FakeClock(datetime(2026, 3, 1, 12, 0))
    core = make_core(clock)
    ids = seed(core)
    a1 = ids["a1"]
    core.ledger.record_spend(a1, date(2026, 3, 1), 100, "USD")
    clock.now = datetime(2026, 3, 1, 13, 0)
    core.relinking.relink(a1, AttributionAxis.customer, ids["c1"])
    clock.now = datetime(2026, 3, 2, 12, 0)
    core.ledger.record_spend(a1, date(2026, 3, 2), 50, "USD")
    clock.now = datetime(2026, 3, 2, 18, 0)
    core.relinking.relink(a1, AttributionAxis.customer, ids["c2"])

    def spend(entity: str, moment: datetime) -> int:
        return core.summary.attributed_spend_as_of(
            AttributionAxis.customer, ids[entity], moment
        ).total_cents

    assert spend("c1", datetime(2026, 3, 1, 11, 0)) == 0
    assert spend("c1", datetime(2026, 3, 1, 20, 0)) == 100
    assert spend("c1", datetime(2026, 3, 2, 13, 0)) == 150
    assert spend("c1", datetime(2026, 3, 3, 0, 0)) == 0
    assert spend("c2", datetime(2026, 3, 3, 0, 0)) == 150

    with pytest.raises(InvalidInput):
        core.summary.attributed_spend_as_of(AttributionAxis.batch, ids["batch"], clock.now)


def test_close_day_is_idempotent_and_lists_newest_first() -> None:
    clock = FakeClock(datetime(2026, 3, 2, 0, 10))
    core = make_core(clock)
    ids = seed(core)
    core.ledger.record_spend(ids["a1"], date(2026, 2, 28), 30, "USD")
    core.ledger.record_spend(ids["a1"], date(2026, 3, 1), 20, "USD")
    core.ledger.record_spend(ids["a1"], date(2026, 3, 2), 99, "USD")

    first = core.snapshots.close_day(date(2026, 3, 1))
    second = core.snapshots.close_day(date(2026, 3, 1))
    core.snapshots.close_day(date(2026, 2, 28))

    assert (first.created, first.existing) == (2, 0)
    assert (second.created, second.existing) == (0, 2)

    items, total = core.snapshots.list_snapshots(account_id=ids["a1"], limit=1)
    assert total == 2
    assert len(items) == 1
    assert items[0].spending_date == date(2026, 3, 1)
    assert items[0].snapshot_type == SnapshotType.daily_final
    assert items[0].cumulative_amount_cents == 50

    page_two, _ = core.snapshots.list_snapshots(account_id=ids["a1"], page=2, limit=1)
    assert page_two[0].spending_date == date(2026, 2, 28)
    assert page_two[0].cumulative_amount_cents == 30

    with pytest.raises(InvalidInput):
        core.snapshots.list_snapshots(page=0)


def test_scheduler_daily_close_covers_previous_day() -> None:
    core = make_core(FakeClock(datetime(2026, 3, 2, 0, 10)))
    seed(core)
    manager = SchedulerManager(core)

    manager._close_previous_day("test")
    manager._close_previous_day("test")

    items, total = core.snapshots.list_snapshots(snapshot_type=SnapshotType.daily_final)
    assert total == 2
    assert {item.spending_date for item in items} == {date(2026, 3, 1)}


def test_scheduler_follows_injected_clock_in_local_timezone() -> None:
    clock = FakeClock(datetime(2026, 3, 1, 18, 30))
    core = make_core(clock)
    core.settings.timezone = "Asia/Ho_Chi_Minh"
    seed(core)
    manager = SchedulerManager(core)

    # 18:30 UTC is already 01:30 on March 2nd in UTC+7.
    manager._close_previous_day("test")

    items, total = core.snapshots.list_snapshots(snapshot_type=SnapshotType.daily_final)
    assert total == 2
    assert {item.spending_date for item in items} == {date(2026, 3, 1)}


def test_daily_final_is_unique_per_account_and_day() -> None:
    core = make_core(FakeClock(datetime(2026, 3, 2, 0, 10)))
    ids = seed(core)
    core.snapshots.close_day(date(2026, 3, 1))

    with pytest.raises(IntegrityError):
        with core.store.session_scope() as session:
            session.add(
                SpendingSnapshot(
                    account_id=ids["a1"],
                    spending_date=date(2026, 3, 1),
                    cumulative_amount_cents=0,
                    snapshot_at=datetime(2026, 3, 1, 23, 59),
                    snapshot_type=SnapshotType.daily_final,
                )
            )

    with core.store.session_scope() as session:
        session.add(
            SpendingSnapshot(
                account_id=ids["a1"],
                spending_date=date(2026, 3, 1),
                cumulative_amount_cents=0,
                snapshot_at=datetime(2026, 3, 1, 23, 59),
                snapshot_type=SnapshotType.mc_change,
            )
        )
    _, total = core.snapshots.list_snapshots(account_id=ids["a1"])
    assert total == 2
