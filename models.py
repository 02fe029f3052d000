from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from periods import utc_now


class AccountStatus(str, Enum):
    active = "ACTIVE"
    inactive = "INACTIVE"


class SnapshotType(str, Enum):
    mi_change = "MI_CHANGE"
    mc_change = "MC_CHANGE"
    daily_final = "DAILY_FINAL"


class AttributionAxis(str, Enum):
    invoice = "invoice"
    customer = "customer"
    batch = "batch"


class EntityType(str, Enum):
    account = "account"
    customer = "customer"
    invoice = "invoice"
    batch = "batch"


def _values_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [member.value for member in members],
    )


ACCOUNT_STATUS_ENUM = _values_enum(AccountStatus, "accountstatus")
SNAPSHOT_TYPE_ENUM = _values_enum(SnapshotType, "snapshottype")


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )


class Batch(Base, TimestampMixin):
    __tablename__ = "batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    mcc_account_id: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[AccountStatus] = mapped_column(
        ACCOUNT_STATUS_ENUM, nullable=False, default=AccountStatus.active
    )
    timezone: Mapped[Optional[str]] = mapped_column(String(64))
    year: Mapped[Optional[int]] = mapped_column(Integer)
    total_accounts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    live_accounts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spending_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    accounts: Mapped[list["Account"]] = relationship(
        "Account", back_populates="batch"
    )


class Customer(Base, TimestampMixin):
    __tablename__ = "customers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    status: Mapped[AccountStatus] = mapped_column(
        ACCOUNT_STATUS_ENUM, nullable=False, default=AccountStatus.active
    )
    total_spending_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_accounts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active_accounts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    notes: Mapped[Optional[str]] = mapped_column(Text)


class InvoiceEntity(Base, TimestampMixin):
    __tablename__ = "invoice_entities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    mcc_invoice_id: Mapped[Optional[str]] = mapped_column(String(64))
    status: Mapped[AccountStatus] = mapped_column(
        ACCOUNT_STATUS_ENUM, nullable=False, default=AccountStatus.active
    )
    linked_accounts_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    active_accounts_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    total_spending_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[AccountStatus] = mapped_column(
        ACCOUNT_STATUS_ENUM, nullable=False, default=AccountStatus.active
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    batch_id: Mapped[int] = mapped_column(ForeignKey("batches.id"), nullable=False)
    current_invoice_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("invoice_entities.id")
    )
    current_customer_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("customers.id")
    )
    total_spending_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    batch: Mapped["Batch"] = relationship("Batch", back_populates="accounts")

    __table_args__ = (
        Index("ix_accounts_batch", "batch_id"),
        Index("ix_accounts_customer", "current_customer_id"),
        Index("ix_accounts_invoice", "current_invoice_id"),
    )

    def pointer_for(self, axis: AttributionAxis) -> Optional[int]:
        if axis == AttributionAxis.invoice:
            return self.current_invoice_id
        if axis == AttributionAxis.customer:
            return self.current_customer_id
        return self.batch_id


class SpendingRecord(Base, TimestampMixin):
    __tablename__ = "spending_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    spending_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    invoice_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("invoice_entities.id")
    )
    customer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("customers.id"))

    __table_args__ = (
        UniqueConstraint(
            "account_id", "spending_date", name="uq_spending_account_date"
        ),
        Index("ix_spending_date", "spending_date"),
        CheckConstraint("amount_cents >= 0", name="ck_spending_amount_positive"),
        CheckConstraint("period_start <= period_end", name="ck_spending_period"),
    )


class SpendingSnapshot(Base):
    __tablename__ = "spending_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    spending_date: Mapped[date] = mapped_column(Date, nullable=False)
    cumulative_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    snapshot_type: Mapped[SnapshotType] = mapped_column(
        SNAPSHOT_TYPE_ENUM, nullable=False
    )
    invoice_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("invoice_entities.id")
    )
    customer_id: Mapped[Optional[int]] = mapped_column(ForeignKey("customers.id"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, nullable=False
    )

    __table_args__ = (
        Index("ix_snapshot_account_at", "account_id", "snapshot_at"),
        Index("ix_snapshot_account_date", "account_id", "spending_date"),
        Index(
            "uq_snapshot_daily_final",
            "account_id",
            "spending_date",
            unique=True,
            sqlite_where=text("snapshot_type = 'DAILY_FINAL'"),
            postgresql_where=text("snapshot_type = 'DAILY_FINAL'"),
        ),
        CheckConstraint(
            "cumulative_amount_cents >= 0", name="ck_snapshot_amount_positive"
        ),
    )
