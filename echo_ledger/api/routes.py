"""
API Routes - FastAPI endpoints for metering, tokens and credits.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.api.dependencies import (
    get_access_claims,
    get_current_user,
    get_pagination,
    get_time_window,
    get_token_manager,
)
from echo_ledger.db.session import get_read_db, get_write_db
from echo_ledger.exceptions import (
    AlreadyRedeemedError,
    AuthenticationError,
    AuthorizationError,
    ConstraintViolationError,
    NotFoundError,
    TokenExpiredError,
    WriteVerificationError,
)
from echo_ledger.models.api import (
    AggregateResponse,
    BalanceResponse,
    HealthResponse,
    PaginatedResponse,
    RedeemCreditGrantRequest,
    RedemptionResponse,
    RefreshTokenRequest,
    TokenResponse,
    TransactionResponse,
    X402AuthenticationResponse,
    X402TransactionRequest,
    to_paginated_response,
)
from echo_ledger.models.domain import (
    AccessClaims,
    PaginationParams,
    TimeWindow,
    TransactionIntent,
    UserData,
)
from echo_ledger.services.aggregation import AggregationService
from echo_ledger.services.credit_grants import CreditGrantService
from echo_ledger.services.tokens import TokenLifecycleManager
from echo_ledger.services.x402_auth import PaymentRequestAuthenticator

logger = get_logger(__name__)
router = APIRouter()


# ============================================================================
# x402 Payment Requests
# ============================================================================


@router.post("/v1/x402/authenticate", response_model=X402AuthenticationResponse)
async def authenticate_payment_request(
    request: Request,
    db: AsyncSession = Depends(get_read_db),
) -> X402AuthenticationResponse:
    """
    Resolve the echo app and current markup for a metered request.

    Missing x-echo-app-id header -> 401. Unknown app -> authenticated=false.
    """
    authenticator = PaymentRequestAuthenticator(db)
    authenticated = await authenticator.authenticate(request.headers)

    if authenticated is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing x-echo-app-id header",
        )

    if authenticated.echo_app is None:
        return X402AuthenticationResponse(authenticated=False)

    return X402AuthenticationResponse(
        authenticated=True,
        app_id=authenticated.echo_app.app_id,
        app_name=authenticated.echo_app.name,
        markup_id=authenticated.markup.markup_id if authenticated.markup else None,
        markup_rate=float(authenticated.markup_rate),
    )


@router.post(
    "/v1/x402/transactions",
    response_model=TransactionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_transaction(
    body: X402TransactionRequest,
    request: Request,
    db: AsyncSession = Depends(get_write_db),
) -> TransactionResponse:
    """
    Authenticate a metered request and record its transaction.

    The markup resolved during authentication is the one recorded.
    The caller is trusted to have settled payment for body.user_id upstream;
    this endpoint checks only the app header and does not authenticate the user.
    Write operation - requires primary database.
    """
    authenticator = PaymentRequestAuthenticator(db)
    authenticated = await authenticator.authenticate(request.headers)

    if authenticated is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing x-echo-app-id header",
        )

    if authenticated.echo_app is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Echo app not found",
        )

    try:
        intent = TransactionIntent(
            user_id=body.user_id,
            app_id=authenticated.echo_app.app_id,
            provider=body.provider,
            raw_cost=body.amount,
            model=body.model,
            request_id=body.request_id,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    try:
        transaction = await authenticator.create_transaction(intent, authenticated)
        return TransactionResponse.from_domain(transaction)

    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc

    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
        ) from exc

    except ConstraintViolationError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=exc.message,
        ) from exc

    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


# ============================================================================
# Tokens
# ============================================================================


@router.post("/v1/oauth/token", response_model=TokenResponse)
async def refresh_token(
    body: RefreshTokenRequest,
    manager: TokenLifecycleManager = Depends(get_token_manager),
) -> TokenResponse:
    """Rotate a refresh token and issue a new access token."""
    try:
        pair = await manager.refresh(body.refresh_token)
        return TokenResponse.from_domain(pair, datetime.now(UTC))

    except TokenExpiredError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Refresh token expired",
        ) from exc

    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid refresh token",
        ) from exc

    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


@router.post("/v1/oauth/revoke", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_token_lineage(
    claims: AccessClaims = Depends(get_access_claims),
    manager: TokenLifecycleManager = Depends(get_token_manager),
) -> Response:
    """Log out: archive the caller's refresh token lineage with no grace window."""
    await manager.revoke_lineage(claims.lineage_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================================
# Credits (caller's own account)
# ============================================================================


@router.post(
    "/v1/credits/redeem",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def redeem_credit_grant(
    body: RedeemCreditGrantRequest,
    user: UserData = Depends(get_current_user),
    db: AsyncSession = Depends(get_write_db),
) -> RedemptionResponse:
    """Redeem a credit grant code for the authenticated user."""
    service = CreditGrantService(db)

    try:
        redemption = await service.redeem(body.code, user.user_id)
        return RedemptionResponse.from_domain(redemption)

    except NotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Credit grant not found or no longer redeemable",
        ) from exc

    except AlreadyRedeemedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Credit grant already redeemed",
        ) from exc

    except ConstraintViolationError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=exc.message,
        ) from exc

    except WriteVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc


@router.get("/v1/me/balance", response_model=BalanceResponse)
async def get_my_balance(
    user: UserData = Depends(get_current_user),
    db: AsyncSession = Depends(get_read_db),
) -> BalanceResponse:
    """Credit balance of the authenticated user."""
    balance = await AggregationService(db).user_balance(user.user_id)
    return BalanceResponse.from_domain(balance)


@router.get("/v1/me/spending", response_model=AggregateResponse)
async def get_my_spending(
    user: UserData = Depends(get_current_user),
    window: TimeWindow = Depends(get_time_window),
    db: AsyncSession = Depends(get_read_db),
) -> AggregateResponse:
    """Spending of the authenticated user, broken down per app."""
    summary = await AggregationService(db).spending_for_user(user.user_id, window)
    return AggregateResponse.from_domain(summary)


@router.get("/v1/me/earnings", response_model=AggregateResponse)
async def get_my_earnings(
    user: UserData = Depends(get_current_user),
    window: TimeWindow = Depends(get_time_window),
    db: AsyncSession = Depends(get_read_db),
) -> AggregateResponse:
    """Markup earnings on apps the authenticated user owns, broken down per app."""
    summary = await AggregationService(db).earnings_for_user(user.user_id, window)
    return AggregateResponse.from_domain(summary)


@router.get(
    "/v1/me/transactions",
    response_model=PaginatedResponse[TransactionResponse],
)
async def list_my_transactions(
    user: UserData = Depends(get_current_user),
    pagination: PaginationParams = Depends(get_pagination),
    window: TimeWindow = Depends(get_time_window),
    db: AsyncSession = Depends(get_read_db),
) -> PaginatedResponse[TransactionResponse]:
    """Transactions paid by the authenticated user, newest first."""
    page = await AggregationService(db).user_transactions_paginated(
        user.user_id, pagination, window
    )
    return to_paginated_response(page, [TransactionResponse.from_domain(t) for t in page.items])


# ============================================================================
# Health
# ============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        logger.error("health_check_failed", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        ) from exc
