"""
Admin API routes for operating the ledger.

Protected by bearer access tokens. Every route requires the admin flag,
resolved once into an AdminContext by the dependency layer.
"""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.api.dependencies import (
    get_admin_context,
    get_admin_read_service,
    get_admin_service,
    get_pagination,
    get_time_window,
)
from echo_ledger.db.session import get_write_db
from echo_ledger.exceptions import NotFoundError, WriteVerificationError
from echo_ledger.models.api import (
    AggregateResponse,
    BalanceResponse,
    CreateCreditGrantRequest,
    CreditGrantResponse,
    EchoAppResponse,
    GrantUsageResponse,
    MarkupResponse,
    MintCreditsRequest,
    PaginatedResponse,
    SetMarkupRequest,
    TransactionResponse,
    TransactionTotalsResponse,
    UpdateCreditGrantRequest,
    UserAggregateResponse,
    UserResponse,
    to_paginated_response,
)
from echo_ledger.models.domain import AdminContext, PaginationParams, TimeWindow
from echo_ledger.services.admin import AdminService
from echo_ledger.services.markup import MarkupResolver

logger = get_logger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])


# ============================================================================
# Users and Apps
# ============================================================================


@router.get("/users", response_model=PaginatedResponse[UserResponse])
async def list_users(
    pagination: PaginationParams = Depends(get_pagination),
    admin: AdminService = Depends(get_admin_read_service),
) -> PaginatedResponse[UserResponse]:
    """List all users, newest first."""
    page = await admin.list_users(pagination)
    return to_paginated_response(page, [UserResponse.from_domain(u) for u in page.items])


@router.get("/users/export")
async def export_users_csv(
    created_after: datetime = Query(..., description="Include users created on or after"),
    admin: AdminService = Depends(get_admin_read_service),
) -> Response:
    """Download users created after a date as CSV."""
    export = await admin.export_users_csv(created_after)
    return Response(
        content=export.csv_string,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{export.filename}"'},
    )


@router.get("/users/{user_id}/apps", response_model=list[EchoAppResponse])
async def list_apps_for_user(
    user_id: UUID,
    admin: AdminService = Depends(get_admin_read_service),
) -> list[EchoAppResponse]:
    """Apps owned by a user."""
    apps = await admin.list_apps_for_user(user_id)
    return [
        EchoAppResponse(app_id=app.app_id, name=app.name, created_at=app.created_at)
        for app in apps
    ]


@router.post(
    "/users/{user_id}/credits",
    response_model=BalanceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def mint_credits(
    user_id: UUID,
    body: MintCreditsRequest,
    admin: AdminService = Depends(get_admin_service),
) -> BalanceResponse:
    """Mint credits for a user. Returns the resulting balance."""
    try:
        await admin.mint_credits(user_id, body.amount, body.description)
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        ) from exc
    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    balance = await admin.aggregation.user_balance(user_id)
    return BalanceResponse.from_domain(balance)


@router.get("/users/{user_id}/balance", response_model=BalanceResponse)
async def get_user_balance(
    user_id: UUID,
    admin: AdminService = Depends(get_admin_read_service),
) -> BalanceResponse:
    """Balance of any user."""
    balance = await admin.aggregation.user_balance(user_id)
    return BalanceResponse.from_domain(balance)


@router.post(
    "/apps/{app_id}/markup",
    response_model=MarkupResponse,
    status_code=status.HTTP_201_CREATED,
)
async def set_app_markup(
    app_id: UUID,
    body: SetMarkupRequest,
    context: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_write_db),
) -> MarkupResponse:
    """Append a new markup rate for an app."""
    try:
        markup = await MarkupResolver(db).set_markup(app_id, body.rate)
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Echo app not found",
        ) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    logger.info(
        "admin_markup_set",
        admin_user_id=str(context.user_id),
        app_id=str(app_id),
        rate=str(markup.rate),
    )
    return MarkupResponse(
        markup_id=markup.markup_id,
        app_id=markup.app_id,
        rate=float(markup.rate),
        created_at=markup.created_at,
    )


# ============================================================================
# Credit Grants
# ============================================================================


@router.post(
    "/credit-grants",
    response_model=CreditGrantResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_credit_grant(
    body: CreateCreditGrantRequest,
    admin: AdminService = Depends(get_admin_service),
) -> CreditGrantResponse:
    """Create a credit grant with a random code."""
    grant = await admin.create_grant(
        body.grant_amount,
        name=body.name,
        description=body.description,
        expires_at=body.expires_at,
    )
    return CreditGrantResponse.from_domain(grant)


@router.get("/credit-grants", response_model=PaginatedResponse[CreditGrantResponse])
async def list_credit_grants(
    pagination: PaginationParams = Depends(get_pagination),
    admin: AdminService = Depends(get_admin_read_service),
) -> PaginatedResponse[CreditGrantResponse]:
    """Unarchived credit grants, newest first."""
    page = await admin.list_grants(pagination)
    return to_paginated_response(page, [CreditGrantResponse.from_domain(g) for g in page.items])


@router.get("/credit-grants/{code}", response_model=CreditGrantResponse)
async def get_credit_grant(
    code: str,
    admin: AdminService = Depends(get_admin_read_service),
) -> CreditGrantResponse:
    """Look up a credit grant by code."""
    grant = await admin.get_grant(code)
    if grant is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit grant not found",
        )
    return CreditGrantResponse.from_domain(grant)


@router.patch("/credit-grants/{grant_id}", response_model=CreditGrantResponse)
async def update_credit_grant(
    grant_id: UUID,
    body: UpdateCreditGrantRequest,
    admin: AdminService = Depends(get_admin_service),
) -> CreditGrantResponse:
    """Update a grant's amount, archive flag or metadata. The code cannot change."""
    try:
        grant = await admin.update_grant(
            grant_id,
            grant_amount=body.grant_amount,
            is_archived=body.is_archived,
            name=body.name,
            description=body.description,
            expires_at=body.expires_at,
        )
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit grant not found",
        ) from exc
    return CreditGrantResponse.from_domain(grant)


@router.get(
    "/credit-grants/{code}/usages",
    response_model=PaginatedResponse[GrantUsageResponse],
)
async def list_credit_grant_usages(
    code: str,
    pagination: PaginationParams = Depends(get_pagination),
    admin: AdminService = Depends(get_admin_read_service),
) -> PaginatedResponse[GrantUsageResponse]:
    """Redemptions of a grant grouped by user."""
    try:
        page = await admin.list_grant_usages(code, pagination)
    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit grant not found",
        ) from exc
    return to_paginated_response(page, [GrantUsageResponse.from_domain(u) for u in page.items])


# ============================================================================
# Earnings / Spending
# ============================================================================


@router.get("/users/{user_id}/earnings", response_model=AggregateResponse)
async def get_user_earnings(
    user_id: UUID,
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> AggregateResponse:
    """Markup earnings on apps a user owns."""
    summary = await admin.aggregation.earnings_for_user(user_id, window)
    return AggregateResponse.from_domain(summary)


@router.get("/users/{user_id}/spending", response_model=AggregateResponse)
async def get_user_spending(
    user_id: UUID,
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> AggregateResponse:
    """Total spending of a user."""
    summary = await admin.aggregation.spending_for_user(user_id, window)
    return AggregateResponse.from_domain(summary)


@router.get(
    "/users/{user_id}/transactions",
    response_model=PaginatedResponse[TransactionResponse],
)
async def list_user_transactions(
    user_id: UUID,
    pagination: PaginationParams = Depends(get_pagination),
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> PaginatedResponse[TransactionResponse]:
    """Transactions paid by a user, newest first."""
    page = await admin.aggregation.user_transactions_paginated(user_id, pagination, window)
    return to_paginated_response(page, [TransactionResponse.from_domain(t) for t in page.items])


@router.get("/users/{user_id}/totals", response_model=TransactionTotalsResponse)
async def get_user_totals(
    user_id: UUID,
    admin: AdminService = Depends(get_admin_read_service),
) -> TransactionTotalsResponse:
    """Lifetime transaction totals for a user."""
    totals = await admin.aggregation.user_transaction_totals(user_id)
    return TransactionTotalsResponse.from_domain(totals)


@router.get("/apps/{app_id}/earnings", response_model=AggregateResponse)
async def get_app_earnings(
    app_id: UUID,
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> AggregateResponse:
    """Markup earnings of an app, per provider."""
    summary = await admin.aggregation.earnings_for_app(app_id, window)
    return AggregateResponse.from_domain(summary)


@router.get("/apps/{app_id}/spending", response_model=AggregateResponse)
async def get_app_spending(
    app_id: UUID,
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> AggregateResponse:
    """Spending inside an app, per provider."""
    summary = await admin.aggregation.spending_for_app(app_id, window)
    return AggregateResponse.from_domain(summary)


@router.get("/apps/{app_id}/earnings/users", response_model=list[UserAggregateResponse])
async def get_app_earnings_by_user(
    app_id: UUID,
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> list[UserAggregateResponse]:
    """Markup profit an app earned from each payer."""
    rows = await admin.aggregation.app_earnings_across_all_users(app_id, window)
    return [UserAggregateResponse.from_domain(r) for r in rows]


@router.get(
    "/apps/{app_id}/spending/users",
    response_model=PaginatedResponse[UserAggregateResponse],
)
async def get_app_spending_by_user(
    app_id: UUID,
    pagination: PaginationParams = Depends(get_pagination),
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> PaginatedResponse[UserAggregateResponse]:
    """What each payer spent inside an app."""
    page = await admin.aggregation.app_spending_across_all_users(app_id, pagination, window)
    return to_paginated_response(page, [UserAggregateResponse.from_domain(r) for r in page.items])


@router.get(
    "/apps/{app_id}/transactions",
    response_model=PaginatedResponse[TransactionResponse],
)
async def list_app_transactions(
    app_id: UUID,
    pagination: PaginationParams = Depends(get_pagination),
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> PaginatedResponse[TransactionResponse]:
    """Transactions recorded for an app, newest first."""
    page = await admin.aggregation.app_transactions_paginated(app_id, pagination, window)
    return to_paginated_response(page, [TransactionResponse.from_domain(t) for t in page.items])


@router.get("/apps/{app_id}/totals", response_model=TransactionTotalsResponse)
async def get_app_totals(
    app_id: UUID,
    admin: AdminService = Depends(get_admin_read_service),
) -> TransactionTotalsResponse:
    """Lifetime transaction totals for an app."""
    totals = await admin.aggregation.app_transaction_totals(app_id)
    return TransactionTotalsResponse.from_domain(totals)


@router.get("/earnings", response_model=PaginatedResponse[UserAggregateResponse])
async def list_all_users_earnings(
    pagination: PaginationParams = Depends(get_pagination),
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> PaginatedResponse[UserAggregateResponse]:
    """Earnings per app owner across the platform."""
    page = await admin.aggregation.all_users_earnings_paginated(pagination, window)
    return to_paginated_response(page, [UserAggregateResponse.from_domain(r) for r in page.items])


@router.get("/spending", response_model=PaginatedResponse[UserAggregateResponse])
async def list_all_users_spending(
    pagination: PaginationParams = Depends(get_pagination),
    window: TimeWindow = Depends(get_time_window),
    admin: AdminService = Depends(get_admin_read_service),
) -> PaginatedResponse[UserAggregateResponse]:
    """Spending per payer across the platform."""
    page = await admin.aggregation.all_users_spending_paginated(pagination, window)
    return to_paginated_response(page, [UserAggregateResponse.from_domain(r) for r in page.items])
