import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from config import get_settings
from core import Core
from errors import (
    ConcurrencyConflict,
    ConsistencyViolation,
    InvalidInput,
    Unavailable,
    UnknownEntity,
)
from models import AttributionAxis, EntityType, SnapshotType
from periods import Period, resolve_period
from scheduler import SchedulerManager
from schemas import (
    AccountOut,
    AttributedSpendOut,
    BulkRelinkIn,
    BulkRelinkOut,
    BulkStatusIn,
    BulkStatusOut,
    ChartOut,
    DailyPointOut,
    EntitySummaryOut,
    ReconcileIn,
    ReconcileReportOut,
    RelinkIn,
    RelinkOut,
    SnapshotOut,
    SnapshotPage,
    SpendIn,
    SpendingRecordOut,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


def get_core(request: Request) -> Core:
    core = getattr(request.app.state, "core", None)
    if core is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return core


def period_from_request(request: Request, core: Core) -> Period:
    period_slug = request.query_params.get("period")
    start = request.query_params.get("start")
    end = request.query_params.get("end")
    try:
        return resolve_period(period_slug, start, end, today=core.summary.clock().date())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.post("/spending", response_model=SpendingRecordOut)
def record_spend(payload: SpendIn, core: Core = Depends(get_core)):
    return core.ledger.record_spend(
        payload.account_id,
        payload.spending_date,
        payload.amount_cents,
        payload.currency,
        period_start=payload.period_start,
        period_end=payload.period_end,
    )


@router.get("/accounts/unlinked", response_model=list[AccountOut])
def unlinked_accounts(
    axis: AttributionAxis = Query(AttributionAxis.invoice),
    core: Core = Depends(get_core),
):
    return core.relinking.unlinked_accounts(axis)


@router.post("/accounts/bulk-relink", response_model=BulkRelinkOut)
def bulk_relink(payload: BulkRelinkIn, core: Core = Depends(get_core)):
    return core.relinking.bulk_relink(
        payload.account_ids, payload.axis, payload.entity_id
    )


@router.post("/accounts/bulk-status", response_model=BulkStatusOut)
def bulk_status(payload: BulkStatusIn, core: Core = Depends(get_core)):
    return core.relinking.bulk_set_status(payload.account_ids, payload.status)


@router.get("/accounts/{account_id}/spending", response_model=list[SpendingRecordOut])
def account_spending(
    account_id: int, request: Request, core: Core = Depends(get_core)
):
    period = None
    if request.query_params.get("period") or request.query_params.get("start"):
        period = period_from_request(request, core)
    return core.ledger.records_for_account(account_id, period)


@router.get("/accounts/{account_id}/total")
def account_total(account_id: int, core: Core = Depends(get_core)):
    return {
        "account_id": account_id,
        "total_cents": core.ledger.aggregate_spend(account_id),
    }


@router.get("/accounts/{account_id}/snapshots", response_model=SnapshotPage)
def account_snapshots(
    account_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    snapshot_type: Optional[SnapshotType] = Query(None, alias="type"),
    core: Core = Depends(get_core),
):
    items, total = core.snapshots.list_snapshots(
        account_id=account_id, snapshot_type=snapshot_type, page=page, limit=limit
    )
    return SnapshotPage(
        items=[SnapshotOut.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.post("/accounts/{account_id}/relink", response_model=RelinkOut)
def relink_account(
    account_id: int, payload: RelinkIn, core: Core = Depends(get_core)
):
    return core.relinking.relink(account_id, payload.axis, payload.entity_id)


@router.post("/reconcile", response_model=ReconcileReportOut)
def reconcile_all(
    payload: Optional[ReconcileIn] = None, core: Core = Depends(get_core)
):
    dry_run = payload.dry_run if payload else False
    report = core.reconciliation.reconcile_all(dry_run=dry_run)
    return ReconcileReportOut.model_validate(report)


@router.post("/reconcile/{entity_type}/{entity_id}", response_model=ReconcileReportOut)
def reconcile_entity(
    entity_type: EntityType,
    entity_id: int,
    dry_run: bool = False,
    core: Core = Depends(get_core),
):
    report = core.reconciliation.reconcile_entity(
        entity_type, entity_id, dry_run=dry_run
    )
    return ReconcileReportOut.model_validate(report)


@router.get("/summary/{entity_type}/{entity_id}", response_model=EntitySummaryOut)
def entity_summary(
    entity_type: EntityType,
    entity_id: int,
    request: Request,
    core: Core = Depends(get_core),
):
    period = period_from_request(request, core)
    summary = core.summary.entity_summary(entity_type, entity_id, period)
    return EntitySummaryOut(
        entity_type=summary.entity_type,
        entity_id=summary.entity_id,
        period=period.slug,
        start=period.start,
        end=period.end,
        total_cents=summary.total_cents,
        record_count=summary.record_count,
        account_count=summary.account_count,
        daily=[DailyPointOut.model_validate(point) for point in summary.daily],
    )


@router.get("/attribution/{axis}/{entity_id}", response_model=AttributedSpendOut)
def attributed_spend(
    axis: AttributionAxis,
    entity_id: int,
    as_of: Optional[datetime] = None,
    core: Core = Depends(get_core),
):
    moment = as_of or core.summary.clock()
    return core.summary.attributed_spend_as_of(axis, entity_id, moment)


@router.get("/charts/global", response_model=ChartOut)
def global_chart(
    days: int = Query(7, ge=1, le=366), core: Core = Depends(get_core)
):
    total, points = core.summary.global_chart(days)
    return ChartOut(
        days=days,
        total_cents=total,
        points=[DailyPointOut.model_validate(point) for point in points],
    )


def _error(status_code: int):
    def handler(request: Request, exc: Exception) -> JSONResponse:
        if status_code >= 500:
            logger.error(f"request_failed: path={request.url.path} error={exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


def create_app(
    core: Optional[Core] = None, *, start_scheduler: Optional[bool] = None
) -> FastAPI:
    application = FastAPI(title="Ad Spend Ledger")
    application.include_router(router)
    application.add_exception_handler(InvalidInput, _error(400))
    application.add_exception_handler(UnknownEntity, _error(404))
    application.add_exception_handler(ConsistencyViolation, _error(409))
    application.add_exception_handler(ConcurrencyConflict, _error(409))
    application.add_exception_handler(Unavailable, _error(503))
    application.state.core = core
    application.state.scheduler = None

    @application.on_event("startup")
    def startup_event():
        if application.state.core is None:
            settings = get_settings()
            logging.getLogger().setLevel(settings.log_level)
            application.state.core = Core.from_settings(settings)
        settings = application.state.core.settings
        enabled = settings.scheduler_enabled if start_scheduler is None else start_scheduler
        if enabled:
            manager = SchedulerManager(application.state.core)
            manager.start()
            application.state.scheduler = manager

    @application.on_event("shutdown")
    def shutdown_event():
        if application.state.scheduler is not None:
            application.state.scheduler.stop()
            application.state.scheduler = None

    return application


app = create_app()
