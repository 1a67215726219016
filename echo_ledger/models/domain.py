"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
NO FLOATS - Every money-like quantity is a Decimal.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Generic, TypeVar
from uuid import UUID

from echo_ledger.exceptions import AuthorizationError

T = TypeVar("T")

# Precision used for every stored money-like quantity
MONEY_QUANTUM = Decimal("0.0000000001")
ZERO = Decimal("0")

# Markup rates are stored as NUMERIC(12, 6)
RATE_QUANTUM = Decimal("0.000001")
MAX_RATE = Decimal("999999.999999")


def quantize_money(value: Decimal) -> Decimal:
    """Round a money value to the ledger precision."""
    return value.quantize(MONEY_QUANTUM)


def quantize_rate(value: Decimal) -> Decimal:
    """Round a markup rate to the stored precision."""
    return value.quantize(RATE_QUANTUM)


# ============================================================================
# Pagination
# ============================================================================


@dataclass(frozen=True)
class PaginationParams:
    """Zero-indexed page request."""

    page: int = 0
    page_size: int = 10

    def __post_init__(self) -> None:
        """Validate pagination bounds."""
        if self.page < 0:
            raise ValueError(f"page must be >= 0: {self.page}")
        if self.page_size < 1:
            raise ValueError(f"page_size must be >= 1: {self.page_size}")

    @property
    def offset(self) -> int:
        """Rows to skip."""
        return self.page * self.page_size

    @property
    def limit(self) -> int:
        """Rows to take."""
        return self.page_size


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of results plus the count before pagination."""

    items: list[T]
    page: int
    page_size: int
    total_count: int

    @property
    def has_more(self) -> bool:
        """Whether a later page exists."""
        return (self.page + 1) * self.page_size < self.total_count


def to_page(items: list[T], pagination: PaginationParams, total_count: int) -> Page[T]:
    """Wrap a slice of results into a Page."""
    return Page(
        items=items,
        page=pagination.page,
        page_size=pagination.page_size,
        total_count=total_count,
    )


@dataclass(frozen=True)
class TimeWindow:
    """Half-open [start, end) window on created_at. Either bound may be open."""

    start: datetime | None = None
    end: datetime | None = None

    def __post_init__(self) -> None:
        """Validate window ordering."""
        if self.start is not None and self.end is not None and self.end < self.start:
            raise ValueError(f"Window end {self.end} is before start {self.start}")


# ============================================================================
# Apps and Markup
# ============================================================================


@dataclass(frozen=True)
class EchoAppData:
    """Immutable echo app snapshot."""

    app_id: UUID
    name: str
    created_at: datetime


@dataclass(frozen=True)
class MarkUpData:
    """Immutable markup row - a fractional surcharge on raw provider cost."""

    markup_id: UUID
    app_id: UUID
    rate: Decimal
    created_at: datetime


@dataclass(frozen=True)
class AuthenticatedRequest:
    """Result of payment-request authentication. Either side may be None."""

    echo_app: EchoAppData | None
    markup: MarkUpData | None

    @property
    def markup_rate(self) -> Decimal:
        """Rate to apply; no markup means zero."""
        return self.markup.rate if self.markup is not None else ZERO


# ============================================================================
# Ledger
# ============================================================================


@dataclass(frozen=True)
class TransactionIntent:
    """Domain model for a chargeable event before persistence - immutable intent."""

    user_id: UUID
    app_id: UUID
    provider: str
    raw_cost: Decimal
    model: str | None = None
    request_id: str | None = None

    def __post_init__(self) -> None:
        """Validate transaction constraints."""
        if not isinstance(self.raw_cost, Decimal):
            raise TypeError(f"raw_cost must be a Decimal, got {type(self.raw_cost).__name__}")
        if self.raw_cost < 0:
            raise ValueError(f"Transaction amount cannot be negative: {self.raw_cost}")
        if not self.provider:
            raise ValueError("provider cannot be empty")


@dataclass(frozen=True)
class PricedCost:
    """Raw cost split into provider share and markup profit."""

    raw_cost: Decimal
    markup_rate: Decimal
    markup_profit: Decimal
    total_cost: Decimal


def price_with_markup(raw_cost: Decimal, markup_rate: Decimal) -> PricedCost:
    """Apply a markup rate to a raw cost using exact decimal arithmetic."""
    raw = quantize_money(raw_cost)
    profit = quantize_money(raw * markup_rate)
    return PricedCost(
        raw_cost=raw,
        markup_rate=markup_rate,
        markup_profit=profit,
        total_cost=raw + profit,
    )


@dataclass(frozen=True)
class TransactionData:
    """Immutable transaction data after persistence."""

    transaction_id: UUID
    user_id: UUID
    app_id: UUID
    provider: str
    model: str | None
    raw_cost: Decimal
    markup_rate: Decimal
    markup_id: UUID | None
    markup_profit: Decimal
    total_cost: Decimal
    request_id: str | None
    created_at: datetime


@dataclass(frozen=True)
class BreakdownItem:
    """One row of an aggregation breakdown (keyed by app, provider or user)."""

    key: str
    total: Decimal
    transaction_count: int


@dataclass(frozen=True)
class AggregateSummary:
    """Total plus per-key breakdown for an earnings or spending rollup."""

    total: Decimal
    transaction_count: int
    breakdown: list[BreakdownItem] = field(default_factory=list)


@dataclass(frozen=True)
class TransactionTotals:
    """Scalar totals over every transaction for an entity."""

    transaction_count: int
    total_raw_cost: Decimal
    total_markup_profit: Decimal
    total_cost: Decimal


@dataclass(frozen=True)
class UserAggregate:
    """Per-user rollup row used by the all-users listings."""

    user_id: UUID
    total: Decimal
    transaction_count: int


@dataclass(frozen=True)
class BalanceData:
    """Credit balance computed from deposits minus spending."""

    user_id: UUID
    total_deposited: Decimal
    total_spent: Decimal

    @property
    def balance(self) -> Decimal:
        """Remaining balance."""
        return self.total_deposited - self.total_spent


# ============================================================================
# Credit Grants
# ============================================================================


@dataclass(frozen=True)
class CreditGrantData:
    """Immutable credit grant snapshot."""

    grant_id: UUID
    code: str
    grant_amount: Decimal
    name: str | None
    description: str | None
    expires_at: datetime | None
    is_archived: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class GrantUsageItem:
    """How many times one user shows up in a grant's usages."""

    user_id: UUID
    usage_count: int


@dataclass(frozen=True)
class CreditRedemption:
    """Result of a successful grant redemption."""

    usage_id: UUID
    deposit_id: UUID
    code: str
    user_id: UUID
    amount: Decimal
    redeemed_at: datetime


@dataclass(frozen=True)
class CreditDepositData:
    """Immutable balance top-up."""

    deposit_id: UUID
    user_id: UUID
    amount: Decimal
    source: str
    description: str
    created_at: datetime


# ============================================================================
# Users, Admin
# ============================================================================


@dataclass(frozen=True)
class UserData:
    """Immutable user snapshot."""

    user_id: UUID
    name: str | None
    email: str
    admin: bool
    created_at: datetime


@dataclass(frozen=True)
class AdminContext:
    """
    Authorization context resolved once at the request boundary.

    Services receive this instead of re-querying the admin flag per operation.
    """

    user_id: UUID
    is_admin: bool

    @classmethod
    def for_user(cls, user: UserData) -> "AdminContext":
        """Build an admin context, rejecting non-admin users."""
        if not user.admin:
            raise AuthorizationError("admin")
        return cls(user_id=user.user_id, is_admin=True)


@dataclass(frozen=True)
class UsersCsvExport:
    """CSV export of users created after a date."""

    csv_string: str
    filename: str
    user_count: int


# ============================================================================
# Tokens
# ============================================================================


@dataclass(frozen=True)
class TokenPair:
    """Access + refresh credentials returned to a client."""

    access_token: str
    access_token_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    lineage_id: UUID
    token_type: str = "Bearer"


@dataclass(frozen=True)
class AccessClaims:
    """Verified access token claims."""

    user_id: UUID
    lineage_id: UUID
    app_id: UUID | None
    expires_at: datetime


@dataclass(frozen=True)
class RefreshTokenState:
    """Snapshot of a refresh token row (never carries the raw token)."""

    token_id: UUID
    lineage_id: UUID
    user_id: UUID
    app_id: UUID | None
    expires_at: datetime
    archived_at: datetime | None
    archive_expires_at: datetime | None

    @property
    def is_active(self) -> bool:
        """Active means not yet archived by a rotation."""
        return self.archived_at is None
