from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import InstrumentedAttribute, Session

from errors import UnknownAccount, UnknownEntity
from models import (
    Account,
    AccountStatus,
    Batch,
    Customer,
    EntityType,
    InvoiceEntity,
    SpendingRecord,
)


@dataclass(frozen=True)
class CounterChange:
    entity_type: EntityType
    entity_id: int
    field: str
    old_value: int
    new_value: int

    @property
    def changed(self) -> bool:
        return self.old_value != self.new_value


@dataclass(frozen=True)
class _EntityCounters:
    model: type
    pointer: InstrumentedAttribute
    total_field: str
    active_field: str


ENTITY_COUNTERS: dict[EntityType, _EntityCounters] = {
    EntityType.customer: _EntityCounters(
        Customer, Account.current_customer_id, "total_accounts", "active_accounts"
    ),
    EntityType.invoice: _EntityCounters(
        InvoiceEntity,
        Account.current_invoice_id,
        "linked_accounts_count",
        "active_accounts_count",
    ),
    EntityType.batch: _EntityCounters(
        Batch, Account.batch_id, "total_accounts", "live_accounts"
    ),
}

EntityKey = tuple[EntityType, int]


def ledger_total(session: Session, account_id: int) -> int:
    return int(
        session.execute(
            select(func.coalesce(func.sum(SpendingRecord.amount_cents), 0)).where(
                SpendingRecord.account_id == account_id
            )
        ).scalar_one()
        or 0
    )


def entities_of(account: Account) -> set[EntityKey]:
    keys: set[EntityKey] = {(EntityType.batch, account.batch_id)}
    if account.current_customer_id is not None:
        keys.add((EntityType.customer, account.current_customer_id))
    if account.current_invoice_id is not None:
        keys.add((EntityType.invoice, account.current_invoice_id))
    return keys


class AggregationEngine:
    """Maintains the cached counters derived from the ledger.

    ``apply_delta`` is the O(1) hot path for a single record write whose
    account attribution does not change. Everything else goes through the
    ``recompute_*`` methods, which rebuild a counter from ledger rows and the
    current attribution pointers only, so a stale cache on one entity can
    never leak into another.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def apply_delta(self, account: Account, delta: int) -> None:
        if delta == 0:
            return
        account.total_spending_cents = (account.total_spending_cents or 0) + delta
        for entity_type, entity_id in sorted(entities_of(account)):
            model = ENTITY_COUNTERS[entity_type].model
            self.session.execute(
                update(model)
                .where(model.id == entity_id)
                .values(total_spending_cents=model.total_spending_cents + delta)
            )

    def account_drift(self, account: Account) -> int:
        return (account.total_spending_cents or 0) - ledger_total(
            self.session, account.id
        )

    def recompute_account(
        self, account_id: int, *, dry_run: bool = False
    ) -> list[CounterChange]:
        self.session.flush()
        account = self.session.scalar(
            select(Account)
            .where(Account.id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if account is None:
            raise UnknownAccount(account_id)
        change = CounterChange(
            EntityType.account,
            account.id,
            "total_spending_cents",
            account.total_spending_cents or 0,
            ledger_total(self.session, account.id),
        )
        if change.changed and not dry_run:
            account.total_spending_cents = change.new_value
            self.session.flush()
        return [change]

    def recompute_entity(
        self, entity_type: EntityType, entity_id: int, *, dry_run: bool = False
    ) -> list[CounterChange]:
        if entity_type == EntityType.account:
            return self.recompute_account(entity_id, dry_run=dry_run)

        counters = ENTITY_COUNTERS[entity_type]
        self.session.flush()
        entity = self.session.scalar(
            select(counters.model)
            .where(counters.model.id == entity_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if entity is None:
            raise UnknownEntity(entity_type.value, entity_id)

        total_accounts, active_accounts = self._account_counts(counters, entity_id)
        fresh = {
            counters.total_field: total_accounts,
            counters.active_field: active_accounts,
            "total_spending_cents": self._attributed_spend(counters, entity_id),
        }
        changes = [
            CounterChange(
                entity_type, entity_id, field, getattr(entity, field) or 0, value
            )
            for field, value in fresh.items()
        ]
        if not dry_run:
            for change in changes:
                if change.changed:
                    setattr(entity, change.field, change.new_value)
            self.session.flush()
        return changes

    def recompute_customer(self, customer_id: int, **kwargs) -> list[CounterChange]:
        return self.recompute_entity(EntityType.customer, customer_id, **kwargs)

    def recompute_invoice(self, invoice_id: int, **kwargs) -> list[CounterChange]:
        return self.recompute_entity(EntityType.invoice, invoice_id, **kwargs)

    def recompute_batch(self, batch_id: int, **kwargs) -> list[CounterChange]:
        return self.recompute_entity(EntityType.batch, batch_id, **kwargs)

    def recompute_many(
        self, keys: Iterable[tuple[EntityType, Optional[int]]]
    ) -> list[CounterChange]:
        changes: list[CounterChange] = []
        for entity_type, entity_id in sorted(
            {key for key in keys if key[1] is not None}
        ):
            changes.extend(self.recompute_entity(entity_type, entity_id))
        return changes

    def _account_counts(
        self, counters: _EntityCounters, entity_id: int
    ) -> tuple[int, int]:
        row = self.session.execute(
            select(
                func.count(Account.id),
                func.coalesce(
                    func.sum(case((Account.status == AccountStatus.active, 1), else_=0)),
                    0,
                ),
            ).where(counters.pointer == entity_id)
        ).one()
        return int(row[0] or 0), int(row[1] or 0)

    def _attributed_spend(self, counters: _EntityCounters, entity_id: int) -> int:
        return int(
            self.session.execute(
                select(func.coalesce(func.sum(SpendingRecord.amount_cents), 0))
                .join(Account, Account.id == SpendingRecord.account_id)
                .where(counters.pointer == entity_id)
            ).scalar_one()
            or 0
        )
