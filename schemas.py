from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountStatus, AttributionAxis, EntityType, SnapshotType


class SpendIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    spending_date: date
    amount_cents: int
    currency: str = Field(default="USD", min_length=1, max_length=3)
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class SpendingRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    spending_date: date
    amount_cents: int
    currency: str
    period_start: datetime
    period_end: datetime
    invoice_id: Optional[int]
    customer_id: Optional[int]


class SnapshotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    spending_date: date
    cumulative_amount_cents: int
    snapshot_at: datetime
    snapshot_type: SnapshotType
    invoice_id: Optional[int]
    customer_id: Optional[int]


class SnapshotPage(BaseModel):
    items: list[SnapshotOut]
    total: int
    page: int
    limit: int


class RelinkIn(BaseModel):
    axis: AttributionAxis
    entity_id: Optional[int] = None


class BulkRelinkIn(BaseModel):
    account_ids: list[int] = Field(..., min_length=1)
    axis: AttributionAxis
    entity_id: Optional[int] = None


class BulkStatusIn(BaseModel):
    account_ids: list[int] = Field(..., min_length=1)
    status: AccountStatus


class RelinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    account_id: int
    axis: AttributionAxis
    previous_id: Optional[int]
    current_id: Optional[int]
    changed: bool
    snapshot_id: Optional[int]
    affected_entities: int


class BulkRelinkOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    axis: AttributionAxis
    target_id: Optional[int]
    changed: int
    unchanged: int
    snapshots: int
    affected_entities: int


class BulkStatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: AccountStatus
    changed: int
    unchanged: int
    affected_entities: int


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    external_id: str
    name: str
    status: AccountStatus
    currency: str
    batch_id: int
    current_invoice_id: Optional[int]
    current_customer_id: Optional[int]
    total_spending_cents: int


class ReconcileIn(BaseModel):
    dry_run: bool = False


class ReconcileEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: EntityType
    entity_id: int
    field: str
    old_value: int
    new_value: int
    corrected: bool


class ReconcileFailureOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entity_type: EntityType
    entity_id: int
    error: str


class ReconcileReportOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dry_run: bool
    checked: int
    drifted: int
    entries: list[ReconcileEntryOut]
    failures: list[ReconcileFailureOut]
    chunks_total: int
    chunks_done: int
    cancelled: bool


class DailyPointOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day: date
    amount_cents: int


class EntitySummaryOut(BaseModel):
    entity_type: EntityType
    entity_id: int
    period: str
    start: date
    end: date
    total_cents: int
    record_count: int
    account_count: int
    daily: list[DailyPointOut]


class ChartOut(BaseModel):
    days: int
    total_cents: int
    points: list[DailyPointOut]


class AttributedSpendOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    axis: AttributionAxis
    entity_id: int
    as_of: datetime
    total_cents: int
    account_ids: list[int]
