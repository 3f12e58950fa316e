from datetime import datetime
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from .config import get_settings
from .logging_config import setup_logging
from .models import (
    Balances,
    ByPartnerIds,
    ByProgram,
    ByWorkspace,
    ClaimRequest,
    ClaimResult,
    Commission,
    CommissionDeletion,
    CommissionFilters,
    CommissionStatus,
    CommissionType,
    CreatePayoutRequest,
    ForceCommissionStatusRequest,
    Granularity,
    Payout,
    PayoutStatus,
    PayoutStatusRequest,
    PendingVerification,
    PhoneVerificationRequest,
    ResetSplitsRequest,
    SortField,
    SortOrder,
    TimeseriesGroupBy,
    TimeseriesPoint,
    TransitionCommissionRequest,
    WithdrawRequest,
)
from .service import (
    ConflictError,
    InternalLedgerError,
    LedgerService,
    LedgerServiceError,
    LedgerValidationError,
    NotFoundError,
)

setup_logging()

app = FastAPI(
    title="Commission Ledger API",
    description="Commission lifecycle, payouts, balances and split claiming for referral programs",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ConflictError, status.HTTP_409_CONFLICT),
    (LedgerValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InternalLedgerError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


@lru_cache
def get_ledger_service() -> LedgerService:
    return LedgerService()


def _http_error(e: LedgerServiceError) -> HTTPException:
    for error_cls, status_code in ERROR_STATUS:
        if isinstance(e, error_cls):
            return HTTPException(status_code=status_code, detail=e.to_dict())
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())


def commission_filters(
    commission_status: Optional[CommissionStatus] = Query(None, alias="status"),
    commission_type: Optional[CommissionType] = Query(None, alias="type"),
    link_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    payout_id: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> CommissionFilters:
    try:
        return CommissionFilters(
            status=commission_status,
            type=commission_type,
            link_id=link_id,
            customer_id=customer_id,
            payout_id=payout_id,
            start=start,
            end=end,
        )
    except ValidationError as e:
        raise _http_error(LedgerValidationError(
            "Invalid commission filters",
            {"errors": jsonable_encoder(e.errors(include_url=False, include_context=False))},
        ))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = LedgerValidationError("Invalid request", {"errors": jsonable_encoder(exc.errors())})
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": error.to_dict()})


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "commission-ledger"}


@app.get("/commissions/{commission_id}", response_model=Commission, tags=["Commissions"])
def get_commission(commission_id: str, service: LedgerService = Depends(get_ledger_service)) -> Commission:
    try:
        return service.get_commission(commission_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/commissions/{commission_id}/transition", response_model=Commission, tags=["Commissions"])
def transition_commission(
    commission_id: str,
    request: TransitionCommissionRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> Commission:
    try:
        return service.transition_commission(commission_id, request.status)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/commissions/claim", response_model=ClaimResult, tags=["Claims"])
def claim_commissions(request: ClaimRequest, service: LedgerService = Depends(get_ledger_service)) -> ClaimResult:
    try:
        return service.claim_commissions(request.phone_number, request.user_id, request.verification_token)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post(
    "/phone-verifications",
    response_model=PendingVerification,
    status_code=status.HTTP_201_CREATED,
    tags=["Claims"],
)
def record_phone_verification(
    request: PhoneVerificationRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> PendingVerification:
    try:
        return service.record_phone_verification(request.phone_number)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/phone-verifications/{token}", response_model=PendingVerification, tags=["Claims"])
def get_pending_verification(token: str, service: LedgerService = Depends(get_ledger_service)) -> PendingVerification:
    try:
        return service.get_pending_verification(token)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/balances", response_model=Balances, tags=["Balances"])
def get_balances(
    workspace_id: Optional[str] = None,
    program_id: Optional[str] = None,
    partner_ids: Optional[list[str]] = Query(None),
    timezone: Optional[str] = None,
    filters: CommissionFilters = Depends(commission_filters),
    service: LedgerService = Depends(get_ledger_service),
) -> Balances:
    given = [v for v in (workspace_id, program_id, partner_ids) if v is not None]
    if len(given) != 1:
        raise _http_error(LedgerValidationError("Pass exactly one of workspace_id, program_id or partner_ids"))

    if workspace_id is not None:
        scope = ByWorkspace(workspace_id=workspace_id)
    elif program_id is not None:
        scope = ByProgram(program_id=program_id)
    else:
        scope = ByPartnerIds(partner_ids=partner_ids)

    try:
        return service.get_balances(scope, timezone, filters=filters)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/workspaces/{workspace_id}/commissions", response_model=list[Commission], tags=["Commissions"])
def list_workspace_commissions(
    workspace_id: str,
    filters: CommissionFilters = Depends(commission_filters),
    sort_by: SortField = SortField.CREATED_AT,
    sort_order: SortOrder = SortOrder.DESC,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: LedgerService = Depends(get_ledger_service),
) -> list[Commission]:
    try:
        return service.list_commissions(
            ByWorkspace(workspace_id=workspace_id),
            filters,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_order=sort_order,
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get(
    "/workspaces/{workspace_id}/earnings/timeseries",
    response_model=list[TimeseriesPoint],
    tags=["Balances"],
)
def workspace_earnings_timeseries(
    workspace_id: str,
    granularity: Granularity = Granularity.DAY,
    timezone: Optional[str] = None,
    group_by: Optional[TimeseriesGroupBy] = None,
    filters: CommissionFilters = Depends(commission_filters),
    service: LedgerService = Depends(get_ledger_service),
) -> list[TimeseriesPoint]:
    try:
        return service.earnings_timeseries(
            ByWorkspace(workspace_id=workspace_id),
            granularity,
            timezone,
            filters=filters,
            group_by=group_by,
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/payouts/{payout_id}", response_model=Payout, tags=["Payouts"])
def get_payout(payout_id: str, service: LedgerService = Depends(get_ledger_service)) -> Payout:
    try:
        return service.get_payout(payout_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post(
    "/workspaces/{workspace_id}/withdraw",
    response_model=Payout,
    status_code=status.HTTP_201_CREATED,
    tags=["Payouts"],
)
def withdraw(
    workspace_id: str,
    request: WithdrawRequest,
    timezone: Optional[str] = None,
    service: LedgerService = Depends(get_ledger_service),
) -> Payout:
    try:
        return service.withdraw(ByWorkspace(workspace_id=workspace_id), request, timezone)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.get("/workspaces/{workspace_id}/payouts", response_model=list[Payout], tags=["Payouts"])
def list_workspace_payouts(
    workspace_id: str,
    payout_status: Optional[PayoutStatus] = Query(None, alias="status"),
    service: LedgerService = Depends(get_ledger_service),
) -> list[Payout]:
    try:
        return service.list_payouts(ByWorkspace(workspace_id=workspace_id), payout_status)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/admin/payouts", response_model=Payout, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def create_payout(request: CreatePayoutRequest, service: LedgerService = Depends(get_ledger_service)) -> Payout:
    try:
        return service.create_payout(
            request.partner_id,
            request.commission_ids,
            description=request.description,
            program_id=request.program_id,
            actor=request.performed_by,
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@app.patch("/admin/payouts/{payout_id}/status", response_model=Payout, tags=["Admin"])
def update_payout_status(
    payout_id: str,
    request: PayoutStatusRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> Payout:
    try:
        return service.force_payout_status(
            payout_id,
            request.status,
            actor=request.performed_by or "admin",
            external_transfer_id=request.external_transfer_id,
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@app.patch("/admin/commissions/{commission_id}/status", response_model=Commission, tags=["Admin"])
def update_commission_status(
    commission_id: str,
    request: ForceCommissionStatusRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> Commission:
    try:
        return service.force_commission_status(commission_id, request.status, request.performed_by)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.delete("/admin/commissions/{commission_id}", response_model=CommissionDeletion, tags=["Admin"])
def delete_commission(
    commission_id: str,
    performed_by: str,
    service: LedgerService = Depends(get_ledger_service),
) -> CommissionDeletion:
    try:
        return service.delete_commission(commission_id, performed_by)
    except LedgerServiceError as e:
        raise _http_error(e)


@app.post("/admin/commission-splits/reset", tags=["Admin"])
def reset_claimed_splits(request: ResetSplitsRequest, service: LedgerService = Depends(get_ledger_service)):
    try:
        reset = service.reset_claimed_splits(request.performed_by, request.phone_number)
    except LedgerServiceError as e:
        raise _http_error(e)
    return {"reset_count": reset}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
