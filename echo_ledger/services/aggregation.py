"""
Aggregation Engine - earnings and spending rollups over the ledger.

Every figure is computed by SQL aggregation over persisted rows; nothing is
cached or kept as a running total. Earnings are markup profit credited to app
owners; spending is total cost charged to payers.

Windows are half-open [start, end) on Transaction.created_at.
"""

from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import ColumnElement, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from echo_ledger.db.models import AppMembership, CreditDeposit, Transaction
from echo_ledger.models.domain import (
    ZERO,
    AggregateSummary,
    BalanceData,
    BreakdownItem,
    Page,
    PaginationParams,
    TimeWindow,
    TransactionData,
    TransactionTotals,
    UserAggregate,
    to_page,
)
from echo_ledger.services.ledger import transaction_to_domain

OWNER_ROLE = "owner"


def _as_decimal(value: Any) -> Decimal:
    """Normalize a SQL aggregate (Decimal, int or None) to Decimal."""
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _window_filters(window: TimeWindow | None) -> list[ColumnElement[bool]]:
    """Build created_at filters for a half-open window."""
    if window is None:
        return []
    filters: list[ColumnElement[bool]] = []
    if window.start is not None:
        filters.append(Transaction.created_at >= window.start)
    if window.end is not None:
        filters.append(Transaction.created_at < window.end)
    return filters


def _owned_app_ids(user_id: UUID) -> Any:
    """Subquery of app ids the user owns."""
    return select(AppMembership.echo_app_id).where(
        AppMembership.user_id == user_id,
        AppMembership.role == OWNER_ROLE,
    )


class AggregationService:
    """Read-only rollups over the transaction ledger."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize aggregation service with database session."""
        self.session = session

    # ========================================================================
    # Per-entity summaries
    # ========================================================================

    async def earnings_for_user(
        self, user_id: UUID, window: TimeWindow | None = None
    ) -> AggregateSummary:
        """Markup profit earned on apps the user owns, broken down per app."""
        return await self._summarize(
            Transaction.markup_profit,
            Transaction.echo_app_id,
            [Transaction.echo_app_id.in_(_owned_app_ids(user_id)), *_window_filters(window)],
        )

    async def earnings_for_app(
        self, app_id: UUID, window: TimeWindow | None = None
    ) -> AggregateSummary:
        """Markup profit earned by one app, broken down per provider."""
        return await self._summarize(
            Transaction.markup_profit,
            Transaction.provider,
            [Transaction.echo_app_id == app_id, *_window_filters(window)],
        )

    async def spending_for_user(
        self, user_id: UUID, window: TimeWindow | None = None
    ) -> AggregateSummary:
        """Total cost paid by one user, broken down per app."""
        return await self._summarize(
            Transaction.total_cost,
            Transaction.echo_app_id,
            [Transaction.user_id == user_id, *_window_filters(window)],
        )

    async def spending_for_app(
        self, app_id: UUID, window: TimeWindow | None = None
    ) -> AggregateSummary:
        """Total cost paid by all users inside one app, broken down per provider."""
        return await self._summarize(
            Transaction.total_cost,
            Transaction.provider,
            [Transaction.echo_app_id == app_id, *_window_filters(window)],
        )

    # ========================================================================
    # All-users rollups
    # ========================================================================

    async def all_users_earnings(self, window: TimeWindow | None = None) -> list[UserAggregate]:
        """Earnings per app owner across the whole platform."""
        stmt = self._owner_earnings_stmt(window)
        return await self._user_rows(stmt)

    async def all_users_earnings_paginated(
        self, pagination: PaginationParams, window: TimeWindow | None = None
    ) -> Page[UserAggregate]:
        """Paginated earnings per app owner."""
        return await self._paginate_user_rows(self._owner_earnings_stmt(window), pagination)

    async def all_users_spending(self, window: TimeWindow | None = None) -> list[UserAggregate]:
        """Spending per payer across the whole platform."""
        stmt = self._payer_stmt(Transaction.total_cost, _window_filters(window))
        return await self._user_rows(stmt)

    async def all_users_spending_paginated(
        self, pagination: PaginationParams, window: TimeWindow | None = None
    ) -> Page[UserAggregate]:
        """Paginated spending per payer."""
        stmt = self._payer_stmt(Transaction.total_cost, _window_filters(window))
        return await self._paginate_user_rows(stmt, pagination)

    async def app_earnings_across_all_users(
        self, app_id: UUID, window: TimeWindow | None = None
    ) -> list[UserAggregate]:
        """Markup profit one app earned from each of its payers."""
        stmt = self._payer_stmt(
            Transaction.markup_profit,
            [Transaction.echo_app_id == app_id, *_window_filters(window)],
        )
        return await self._user_rows(stmt)

    async def app_spending_across_all_users(
        self,
        app_id: UUID,
        pagination: PaginationParams,
        window: TimeWindow | None = None,
    ) -> Page[UserAggregate]:
        """Paginated total cost each payer spent inside one app."""
        stmt = self._payer_stmt(
            Transaction.total_cost,
            [Transaction.echo_app_id == app_id, *_window_filters(window)],
        )
        return await self._paginate_user_rows(stmt, pagination)

    # ========================================================================
    # Transaction listings and totals
    # ========================================================================

    async def app_transactions_paginated(
        self,
        app_id: UUID,
        pagination: PaginationParams,
        window: TimeWindow | None = None,
    ) -> Page[TransactionData]:
        """Transactions for one app, newest first."""
        return await self._paginate_transactions(
            [Transaction.echo_app_id == app_id, *_window_filters(window)], pagination
        )

    async def user_transactions_paginated(
        self,
        user_id: UUID,
        pagination: PaginationParams,
        window: TimeWindow | None = None,
    ) -> Page[TransactionData]:
        """Transactions paid by one user, newest first."""
        return await self._paginate_transactions(
            [Transaction.user_id == user_id, *_window_filters(window)], pagination
        )

    async def app_transaction_totals(self, app_id: UUID) -> TransactionTotals:
        """Totals over every transaction recorded for an app."""
        return await self._totals(Transaction.echo_app_id == app_id)

    async def user_transaction_totals(self, user_id: UUID) -> TransactionTotals:
        """Totals over every transaction paid by a user."""
        return await self._totals(Transaction.user_id == user_id)

    async def user_balance(self, user_id: UUID) -> BalanceData:
        """Balance = credit deposits minus total spending, from immutable history."""
        deposits_stmt = select(func.coalesce(func.sum(CreditDeposit.amount), 0)).where(
            CreditDeposit.user_id == user_id
        )
        deposits_result = await self.session.execute(deposits_stmt)
        total_deposited = _as_decimal(deposits_result.scalar_one())

        spent_stmt = select(func.coalesce(func.sum(Transaction.total_cost), 0)).where(
            Transaction.user_id == user_id
        )
        spent_result = await self.session.execute(spent_stmt)
        total_spent = _as_decimal(spent_result.scalar_one())

        return BalanceData(
            user_id=user_id,
            total_deposited=total_deposited,
            total_spent=total_spent,
        )

    # ========================================================================
    # Query helpers
    # ========================================================================

    async def _summarize(
        self,
        value_column: Any,
        key_column: Any,
        filters: list[ColumnElement[bool]],
    ) -> AggregateSummary:
        """Group by key, sum value; the overall total is the sum of the groups."""
        total = func.coalesce(func.sum(value_column), 0)
        stmt = (
            select(key_column, total, func.count(Transaction.id))
            .where(*filters)
            .group_by(key_column)
            .order_by(total.desc(), key_column)
        )
        result = await self.session.execute(stmt)

        breakdown = [
            BreakdownItem(key=str(key), total=_as_decimal(row_total), transaction_count=count)
            for key, row_total, count in result.all()
        ]
        return AggregateSummary(
            total=sum((item.total for item in breakdown), ZERO),
            transaction_count=sum(item.transaction_count for item in breakdown),
            breakdown=breakdown,
        )

    def _owner_earnings_stmt(self, window: TimeWindow | None) -> Any:
        """Markup profit grouped by the owner of the app it was earned on."""
        total = func.coalesce(func.sum(Transaction.markup_profit), 0)
        return (
            select(AppMembership.user_id, total, func.count(Transaction.id))
            .join(AppMembership, AppMembership.echo_app_id == Transaction.echo_app_id)
            .where(AppMembership.role == OWNER_ROLE, *_window_filters(window))
            .group_by(AppMembership.user_id)
            .order_by(total.desc(), AppMembership.user_id)
        )

    def _payer_stmt(self, value_column: Any, filters: list[ColumnElement[bool]]) -> Any:
        """Value grouped by paying user."""
        total = func.coalesce(func.sum(value_column), 0)
        return (
            select(Transaction.user_id, total, func.count(Transaction.id))
            .where(*filters)
            .group_by(Transaction.user_id)
            .order_by(total.desc(), Transaction.user_id)
        )

    async def _user_rows(self, stmt: Any) -> list[UserAggregate]:
        """Execute a per-user grouped statement."""
        result = await self.session.execute(stmt)
        return [
            UserAggregate(user_id=user_id, total=_as_decimal(row_total), transaction_count=count)
            for user_id, row_total, count in result.all()
        ]

    async def _paginate_user_rows(
        self, stmt: Any, pagination: PaginationParams
    ) -> Page[UserAggregate]:
        """Count groups before pagination, then fetch one page of them."""
        count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
        count_result = await self.session.execute(count_stmt)
        total_count = count_result.scalar_one() or 0

        items = await self._user_rows(stmt.offset(pagination.offset).limit(pagination.limit))
        return to_page(items, pagination, total_count)

    async def _paginate_transactions(
        self, filters: list[ColumnElement[bool]], pagination: PaginationParams
    ) -> Page[TransactionData]:
        """Count matching transactions, then fetch one page newest first."""
        count_stmt = select(func.count(Transaction.id)).where(*filters)
        count_result = await self.session.execute(count_stmt)
        total_count = count_result.scalar_one() or 0

        stmt = (
            select(Transaction)
            .where(*filters)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(pagination.offset)
            .limit(pagination.limit)
        )
        result = await self.session.execute(stmt)
        items = [transaction_to_domain(t) for t in result.scalars().all()]
        return to_page(items, pagination, total_count)

    async def _totals(self, condition: ColumnElement[bool]) -> TransactionTotals:
        """Count and sums over an unfiltered set."""
        stmt = select(
            func.count(Transaction.id),
            func.coalesce(func.sum(Transaction.raw_cost), 0),
            func.coalesce(func.sum(Transaction.markup_profit), 0),
            func.coalesce(func.sum(Transaction.total_cost), 0),
        ).where(condition)
        result = await self.session.execute(stmt)
        count, raw_cost, markup_profit, total_cost = result.one()

        return TransactionTotals(
            transaction_count=count or 0,
            total_raw_cost=_as_decimal(raw_cost),
            total_markup_profit=_as_decimal(markup_profit),
            total_cost=_as_decimal(total_cost),
        )
