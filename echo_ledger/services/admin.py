"""
Admin Service - operator operations behind an explicit admin context.

The admin check happens once, where the AdminContext is built at the request
boundary. Every method here trusts that context instead of re-reading the
user's admin flag.
"""

import csv
import io
from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.db.models import AppMembership, EchoApp, User
from echo_ledger.exceptions import AuthorizationError
from echo_ledger.models.domain import (
    AdminContext,
    CreditDepositData,
    CreditGrantData,
    EchoAppData,
    GrantUsageItem,
    Page,
    PaginationParams,
    UserData,
    UsersCsvExport,
    to_page,
)
from echo_ledger.services.aggregation import OWNER_ROLE, AggregationService
from echo_ledger.services.credit_grants import CreditGrantService
from echo_ledger.services.credits import CreditService

logger = get_logger(__name__)

CSV_HEADER = ["ID", "Name", "Email", "Created At"]


def user_to_domain(user: User) -> UserData:
    """Convert ORM user to domain model."""
    return UserData(
        user_id=user.id,
        name=user.name,
        email=user.email,
        admin=user.admin,
        created_at=user.created_at,
    )


def _iso_utc(value: datetime) -> str:
    """Millisecond-precision UTC ISO-8601 with a Z suffix."""
    value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def render_users_csv(users: list[UserData]) -> str:
    """Render users as CSV: every field quoted, rows joined by newlines, no trailing newline."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    for user in users:
        writer.writerow([str(user.user_id), user.name or "", user.email, _iso_utc(user.created_at)])
    return buffer.getvalue().removesuffix("\n")


class AdminService:
    """Administrative operations for an already-authorized admin."""

    def __init__(self, session: AsyncSession, context: AdminContext) -> None:
        """Initialize admin service; refuses a non-admin context."""
        if not context.is_admin:
            raise AuthorizationError("admin")
        self.session = session
        self.context = context
        self.grants = CreditGrantService(session)
        self.credits = CreditService(session)
        self.aggregation = AggregationService(session)

    # ========================================================================
    # Users and apps
    # ========================================================================

    async def list_users(self, pagination: PaginationParams) -> Page[UserData]:
        """All users, newest first."""
        count_result = await self.session.execute(select(func.count(User.id)))
        total_count = count_result.scalar_one() or 0

        stmt = (
            select(User)
            .order_by(User.created_at.desc(), User.id.desc())
            .offset(pagination.offset)
            .limit(pagination.limit)
        )
        result = await self.session.execute(stmt)
        items = [user_to_domain(u) for u in result.scalars().all()]
        return to_page(items, pagination, total_count)

    async def list_apps_for_user(self, user_id: UUID) -> list[EchoAppData]:
        """Apps the user owns, newest first."""
        stmt = (
            select(EchoApp)
            .join(AppMembership, AppMembership.echo_app_id == EchoApp.id)
            .where(AppMembership.user_id == user_id, AppMembership.role == OWNER_ROLE)
            .order_by(EchoApp.created_at.desc(), EchoApp.id.desc())
        )
        result = await self.session.execute(stmt)
        return [
            EchoAppData(app_id=app.id, name=app.name, created_at=app.created_at)
            for app in result.scalars().all()
        ]

    async def export_users_csv(self, created_after: datetime) -> UsersCsvExport:
        """Export users created on or after a date, newest first."""
        stmt = (
            select(User)
            .where(User.created_at >= created_after)
            .order_by(User.created_at.desc(), User.id.desc())
        )
        result = await self.session.execute(stmt)
        users = [user_to_domain(u) for u in result.scalars().all()]

        export = UsersCsvExport(
            csv_string=render_users_csv(users),
            filename=f"users-created-after-{created_after.date().isoformat()}.csv",
            user_count=len(users),
        )
        logger.info(
            "users_csv_exported",
            admin_user_id=str(self.context.user_id),
            created_after=created_after.isoformat(),
            user_count=export.user_count,
        )
        return export

    # ========================================================================
    # Credits
    # ========================================================================

    async def mint_credits(
        self, user_id: UUID, amount: Decimal, description: str
    ) -> CreditDepositData:
        """Mint credits for a user."""
        deposit = await self.credits.mint_credits(user_id, amount, description)
        logger.info(
            "admin_credits_minted",
            admin_user_id=str(self.context.user_id),
            user_id=str(user_id),
            deposit_id=str(deposit.deposit_id),
        )
        return deposit

    async def create_grant(
        self,
        grant_amount: Decimal,
        name: str | None = None,
        description: str | None = None,
        expires_at: datetime | None = None,
    ) -> CreditGrantData:
        return await self.grants.create_grant(grant_amount, name, description, expires_at)

    async def get_grant(self, code: str) -> CreditGrantData | None:
        return await self.grants.get_grant(code)

    async def list_grants(self, pagination: PaginationParams) -> Page[CreditGrantData]:
        return await self.grants.list_grants(pagination)

    async def update_grant(
        self,
        grant_id: UUID,
        grant_amount: Decimal | None = None,
        is_archived: bool | None = None,
        name: str | None = None,
        description: str | None = None,
        expires_at: datetime | None = None,
    ) -> CreditGrantData:
        grant = await self.grants.update_grant(
            grant_id,
            grant_amount=grant_amount,
            is_archived=is_archived,
            name=name,
            description=description,
            expires_at=expires_at,
        )
        logger.info(
            "admin_credit_grant_updated",
            admin_user_id=str(self.context.user_id),
            grant_id=str(grant_id),
        )
        return grant

    async def list_grant_usages(
        self, code: str, pagination: PaginationParams
    ) -> Page[GrantUsageItem]:
        return await self.grants.list_grant_usages(code, pagination)
