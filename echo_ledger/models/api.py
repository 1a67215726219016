"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
Decimal amounts are converted to float here, at the presentation boundary only.
"""

from datetime import datetime
from decimal import Decimal
from typing import Generic, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from echo_ledger.models.domain import (
    AggregateSummary,
    BalanceData,
    CreditGrantData,
    CreditRedemption,
    GrantUsageItem,
    Page,
    TokenPair,
    TransactionData,
    TransactionTotals,
    UserAggregate,
    UserData,
)

ItemT = TypeVar("ItemT")

# Header carrying the echo app id on metered requests
ECHO_APP_ID_HEADER = "x-echo-app-id"

# Bounds matching the NUMERIC(30, 10) money and NUMERIC(12, 6) rate columns.
# Money inputs leave headroom for markup profit on top of the raw amount.
MONEY_MAX_DIGITS = 20
MONEY_DECIMAL_PLACES = 10
RATE_MAX_DIGITS = 12
RATE_DECIMAL_PLACES = 6


# ============================================================================
# Pagination
# ============================================================================


class PaginatedResponse(BaseModel, Generic[ItemT]):
    """Zero-indexed page of results."""

    items: list[ItemT]
    page: int
    page_size: int
    total_count: int
    has_more: bool


def to_paginated_response(page: Page, items: list[ItemT]) -> PaginatedResponse[ItemT]:
    """Build a paginated response from a domain Page and converted items."""
    return PaginatedResponse[ItemT](
        items=items,
        page=page.page,
        page_size=page.page_size,
        total_count=page.total_count,
        has_more=page.has_more,
    )


# ============================================================================
# Transactions (x402)
# ============================================================================


class X402TransactionRequest(BaseModel):
    """POST /v1/x402/transactions request body."""

    user_id: UUID
    provider: str = Field(..., min_length=1, max_length=100)
    model: str | None = Field(None, max_length=255)
    amount: Decimal = Field(
        ...,
        ge=0,
        max_digits=MONEY_MAX_DIGITS,
        decimal_places=MONEY_DECIMAL_PLACES,
        description="Raw provider cost",
    )
    request_id: str | None = Field(None, max_length=255)


class TransactionResponse(BaseModel):
    """Single ledger transaction."""

    transaction_id: UUID
    user_id: UUID
    app_id: UUID
    provider: str
    model: str | None
    raw_cost: float
    markup_rate: float
    markup_profit: float
    total_cost: float
    request_id: str | None
    created_at: datetime

    @classmethod
    def from_domain(cls, data: TransactionData) -> "TransactionResponse":
        """Convert ledger transaction to API response."""
        return cls(
            transaction_id=data.transaction_id,
            user_id=data.user_id,
            app_id=data.app_id,
            provider=data.provider,
            model=data.model,
            raw_cost=float(data.raw_cost),
            markup_rate=float(data.markup_rate),
            markup_profit=float(data.markup_profit),
            total_cost=float(data.total_cost),
            request_id=data.request_id,
            created_at=data.created_at,
        )


class X402AuthenticationResponse(BaseModel):
    """POST /v1/x402/authenticate response."""

    authenticated: bool
    app_id: UUID | None = None
    app_name: str | None = None
    markup_id: UUID | None = None
    markup_rate: float = 0.0


# ============================================================================
# Aggregates
# ============================================================================


class BreakdownItemResponse(BaseModel):
    """One breakdown row."""

    key: str
    total: float
    transaction_count: int


class AggregateResponse(BaseModel):
    """Earnings or spending rollup."""

    total: float
    transaction_count: int
    breakdown: list[BreakdownItemResponse]

    @classmethod
    def from_domain(cls, data: AggregateSummary) -> "AggregateResponse":
        """Convert aggregate summary to API response."""
        return cls(
            total=float(data.total),
            transaction_count=data.transaction_count,
            breakdown=[
                BreakdownItemResponse(
                    key=item.key,
                    total=float(item.total),
                    transaction_count=item.transaction_count,
                )
                for item in data.breakdown
            ],
        )


class UserAggregateResponse(BaseModel):
    """Per-user rollup row."""

    user_id: UUID
    total: float
    transaction_count: int

    @classmethod
    def from_domain(cls, data: UserAggregate) -> "UserAggregateResponse":
        return cls(
            user_id=data.user_id,
            total=float(data.total),
            transaction_count=data.transaction_count,
        )


class TransactionTotalsResponse(BaseModel):
    """Scalar totals for an app or user."""

    transaction_count: int
    total_raw_cost: float
    total_markup_profit: float
    total_cost: float

    @classmethod
    def from_domain(cls, data: TransactionTotals) -> "TransactionTotalsResponse":
        return cls(
            transaction_count=data.transaction_count,
            total_raw_cost=float(data.total_raw_cost),
            total_markup_profit=float(data.total_markup_profit),
            total_cost=float(data.total_cost),
        )


class BalanceResponse(BaseModel):
    """Credit balance for a user."""

    user_id: UUID
    total_deposited: float
    total_spent: float
    balance: float

    @classmethod
    def from_domain(cls, data: BalanceData) -> "BalanceResponse":
        return cls(
            user_id=data.user_id,
            total_deposited=float(data.total_deposited),
            total_spent=float(data.total_spent),
            balance=float(data.balance),
        )


# ============================================================================
# Credit Grants
# ============================================================================


class CreateCreditGrantRequest(BaseModel):
    """POST /admin/credit-grants request body."""

    model_config = ConfigDict(extra="forbid")

    grant_amount: Decimal = Field(
        ..., gt=0, max_digits=MONEY_MAX_DIGITS, decimal_places=MONEY_DECIMAL_PLACES
    )
    name: str | None = Field(None, max_length=255)
    description: str | None = None
    expires_at: datetime | None = None


class UpdateCreditGrantRequest(BaseModel):
    """PATCH /admin/credit-grants/{grant_id} request body. The code is immutable."""

    model_config = ConfigDict(extra="forbid")

    grant_amount: Decimal | None = Field(
        None, gt=0, max_digits=MONEY_MAX_DIGITS, decimal_places=MONEY_DECIMAL_PLACES
    )
    is_archived: bool | None = None
    name: str | None = Field(None, max_length=255)
    description: str | None = None
    expires_at: datetime | None = None


class CreditGrantResponse(BaseModel):
    """Credit grant as shown to administrators."""

    grant_id: UUID
    code: str
    grant_amount: float
    name: str | None
    description: str | None
    expires_at: datetime | None
    is_archived: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, data: CreditGrantData) -> "CreditGrantResponse":
        return cls(
            grant_id=data.grant_id,
            code=data.code,
            grant_amount=float(data.grant_amount),
            name=data.name,
            description=data.description,
            expires_at=data.expires_at,
            is_archived=data.is_archived,
            created_at=data.created_at,
            updated_at=data.updated_at,
        )


class GrantUsageResponse(BaseModel):
    """Per-user usage count for a grant."""

    user_id: UUID
    usage_count: int

    @classmethod
    def from_domain(cls, data: GrantUsageItem) -> "GrantUsageResponse":
        return cls(user_id=data.user_id, usage_count=data.usage_count)


class RedeemCreditGrantRequest(BaseModel):
    """POST /v1/credits/redeem request body."""

    code: str = Field(..., min_length=1, max_length=64)


class RedemptionResponse(BaseModel):
    """Result of a grant redemption."""

    code: str
    user_id: UUID
    amount: float
    redeemed_at: datetime

    @classmethod
    def from_domain(cls, data: CreditRedemption) -> "RedemptionResponse":
        return cls(
            code=data.code,
            user_id=data.user_id,
            amount=float(data.amount),
            redeemed_at=data.redeemed_at,
        )


class MintCreditsRequest(BaseModel):
    """POST /admin/users/{user_id}/credits request body."""

    amount: Decimal = Field(
        ..., gt=0, max_digits=MONEY_MAX_DIGITS, decimal_places=MONEY_DECIMAL_PLACES
    )
    description: str = Field("Admin credit mint", min_length=1, max_length=500)


# ============================================================================
# Users / Apps
# ============================================================================


class UserResponse(BaseModel):
    """User as shown to administrators."""

    user_id: UUID
    name: str | None
    email: str
    admin: bool
    created_at: datetime

    @classmethod
    def from_domain(cls, data: UserData) -> "UserResponse":
        return cls(
            user_id=data.user_id,
            name=data.name,
            email=data.email,
            admin=data.admin,
            created_at=data.created_at,
        )


class EchoAppResponse(BaseModel):
    """Echo app summary."""

    app_id: UUID
    name: str
    created_at: datetime


class SetMarkupRequest(BaseModel):
    """POST /admin/apps/{app_id}/markup request body."""

    rate: Decimal = Field(
        ..., ge=0, max_digits=RATE_MAX_DIGITS, decimal_places=RATE_DECIMAL_PLACES
    )


class MarkupResponse(BaseModel):
    """Markup row."""

    markup_id: UUID
    app_id: UUID
    rate: float
    created_at: datetime


# ============================================================================
# Tokens
# ============================================================================


class RefreshTokenRequest(BaseModel):
    """POST /v1/oauth/token request body (refresh grant)."""

    grant_type: str = Field("refresh_token", pattern="^refresh_token$")
    refresh_token: str = Field(..., min_length=1)


class TokenResponse(BaseModel):
    """OAuth-style token response."""

    access_token: str
    token_type: str
    expires_in: int
    refresh_token: str
    refresh_token_expires_in: int

    @classmethod
    def from_domain(cls, pair: TokenPair, now: datetime) -> "TokenResponse":
        return cls(
            access_token=pair.access_token,
            token_type=pair.token_type,
            expires_in=max(0, int((pair.access_token_expires_at - now).total_seconds())),
            refresh_token=pair.refresh_token,
            refresh_token_expires_in=max(
                0, int((pair.refresh_token_expires_at - now).total_seconds())
            ),
        )


class HealthResponse(BaseModel):
    """GET /health response."""

    status: str
    database: str
    timestamp: str
