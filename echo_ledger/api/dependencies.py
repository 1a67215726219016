"""
FastAPI Dependencies - Authentication and authorization.

NO DICTIONARIES - All dependencies return typed objects.

The admin capability check runs here, once per request, and the resulting
AdminContext is handed to AdminService.
"""

from datetime import datetime

from fastapi import Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.config import TokenPolicy, get_token_policy
from echo_ledger.db.models import User
from echo_ledger.db.session import get_read_db, get_write_db
from echo_ledger.exceptions import AuthenticationError, AuthorizationError, TokenExpiredError
from echo_ledger.models.domain import (
    AccessClaims,
    AdminContext,
    PaginationParams,
    TimeWindow,
    UserData,
)
from echo_ledger.services.admin import AdminService, user_to_domain
from echo_ledger.services.tokens import TokenLifecycleManager

logger = get_logger(__name__)

# Bearer token scheme for access tokens
bearer_scheme = HTTPBearer(auto_error=False)


def get_pagination(
    page: int = Query(0, ge=0, description="Zero-indexed page number"),
    page_size: int = Query(10, ge=1, le=500, description="Items per page"),
) -> PaginationParams:
    """Pagination from query parameters."""
    return PaginationParams(page=page, page_size=page_size)


def get_time_window(
    start: datetime | None = Query(None, description="Inclusive lower bound on created_at"),
    end: datetime | None = Query(None, description="Exclusive upper bound on created_at"),
) -> TimeWindow:
    """Half-open created_at window from query parameters."""
    try:
        return TimeWindow(start=start, end=end)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc


def get_policy() -> TokenPolicy:
    """Token policy resolved once per process."""
    return get_token_policy()


def get_token_manager(
    db: AsyncSession = Depends(get_write_db),
    policy: TokenPolicy = Depends(get_policy),
) -> TokenLifecycleManager:
    """Token manager bound to the write session."""
    return TokenLifecycleManager(db, policy)


async def get_access_claims(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_read_db),
    policy: TokenPolicy = Depends(get_policy),
) -> AccessClaims:
    """
    Validate the bearer access token.

    Raises:
        HTTPException 401 if no token, expired token or invalid token
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return TokenLifecycleManager(db, policy).authenticate_access_token(credentials.credentials)
    except TokenExpiredError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token expired",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
    except AuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid access token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


async def get_current_user(
    claims: AccessClaims = Depends(get_access_claims),
    db: AsyncSession = Depends(get_read_db),
) -> UserData:
    """Load the user named by the access token."""
    user = await db.get(User, claims.user_id)
    if user is None:
        logger.warning("auth_user_not_found", user_id=str(claims.user_id))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user_to_domain(user)


async def get_admin_context(user: UserData = Depends(get_current_user)) -> AdminContext:
    """
    Resolve the admin capability once.

    Raises:
        HTTPException 403 if the user is not an admin
    """
    try:
        return AdminContext.for_user(user)
    except AuthorizationError as exc:
        logger.warning("admin_auth_insufficient_role", user_id=str(user.user_id))
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        ) from exc


def get_admin_service(
    context: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_write_db),
) -> AdminService:
    """Admin service for write routes."""
    return AdminService(db, context)


def get_admin_read_service(
    context: AdminContext = Depends(get_admin_context),
    db: AsyncSession = Depends(get_read_db),
) -> AdminService:
    """Admin service for read-only routes (read replica)."""
    return AdminService(db, context)
