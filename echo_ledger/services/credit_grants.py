"""
Credit Grant Service - promotional codes redeemable once per user.

Redemption writes a usage row and a credit deposit in one database
transaction. The (user_id, credit_grant_code_id) unique constraint decides
concurrent redemptions; there is no in-process locking.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.db.models import CreditDeposit, CreditGrantCode, CreditGrantCodeUsage, User
from echo_ledger.exceptions import (
    AlreadyRedeemedError,
    ConstraintViolationError,
    NotFoundError,
    WriteVerificationError,
)
from echo_ledger.models.domain import (
    CreditGrantData,
    CreditRedemption,
    GrantUsageItem,
    Page,
    PaginationParams,
    quantize_money,
    to_page,
)
from echo_ledger.observability.metrics import metrics
from echo_ledger.observability.tracing import traced

logger = get_logger(__name__)

USAGE_UNIQUE_CONSTRAINT = "uq_credit_grant_usage_user_code"
DEPOSIT_SOURCE_GRANT = "grant"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def grant_to_domain(grant: CreditGrantCode) -> CreditGrantData:
    """Convert ORM grant to domain model."""
    return CreditGrantData(
        grant_id=grant.id,
        code=grant.code,
        grant_amount=grant.grant_amount,
        name=grant.name,
        description=grant.description,
        expires_at=grant.expires_at,
        is_archived=grant.is_archived,
        created_at=grant.created_at,
        updated_at=grant.updated_at,
    )


def _is_redeemable(grant: CreditGrantCode, now: datetime) -> bool:
    """Unarchived and not past expiry."""
    if grant.is_archived:
        return False
    return grant.expires_at is None or now < grant.expires_at


class CreditGrantService:
    """Create, list, update and redeem credit grant codes."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize credit grant service with database session."""
        self.session = session

    async def create_grant(
        self,
        grant_amount: Decimal,
        name: str | None = None,
        description: str | None = None,
        expires_at: datetime | None = None,
    ) -> CreditGrantData:
        """
        Create a new grant with a random code.

        Raises:
            ValueError: Non-positive amount
            ConstraintViolationError: Code collision
            WriteVerificationError: Row not readable after insert
        """
        if grant_amount <= 0:
            raise ValueError(f"Grant amount must be positive: {grant_amount}")

        now = _utc_now()
        grant = CreditGrantCode(
            id=uuid4(),
            code=str(uuid4()),
            grant_amount=quantize_money(grant_amount),
            name=name,
            description=description,
            expires_at=expires_at,
            is_archived=False,
            created_at=now,
            updated_at=now,
        )
        self.session.add(grant)

        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            logger.error("credit_grant_integrity_error", error=str(e))
            raise ConstraintViolationError("credit_grant_codes.code", str(e.orig)) from e

        verified = await self.session.get(CreditGrantCode, grant.id)
        if verified is None:
            raise WriteVerificationError(f"CreditGrantCode {grant.id} not found after insert")

        await self.session.commit()

        logger.info(
            "credit_grant_created",
            grant_id=str(verified.id),
            amount=str(verified.grant_amount),
            expires_at=verified.expires_at.isoformat() if verified.expires_at else None,
        )
        return grant_to_domain(verified)

    async def get_grant(self, code: str) -> CreditGrantData | None:
        """Look up a grant by its code, archived or not."""
        grant = await self._find_by_code(code)
        if grant is None:
            return None
        return grant_to_domain(grant)

    @traced("credit_grants.redeem")
    async def redeem(self, code: str, user_id: UUID) -> CreditRedemption:
        """
        Redeem a grant for a user.

        Raises:
            NotFoundError: Grant unknown, archived or expired; or user unknown
            AlreadyRedeemedError: User already redeemed this grant
            ConstraintViolationError: Storage rejected the rows for another reason
            WriteVerificationError: Rows not readable after insert
        """
        now = _utc_now()

        grant = await self._find_by_code(code)
        if grant is None or not _is_redeemable(grant, now):
            metrics.record_grant_redemption("not_found")
            logger.warning("credit_grant_not_redeemable", code=code, user_id=str(user_id))
            raise NotFoundError("CreditGrantCode", code)

        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        usage = CreditGrantCodeUsage(
            id=uuid4(),
            user_id=user_id,
            credit_grant_code_id=grant.id,
            created_at=now,
        )
        deposit = CreditDeposit(
            id=uuid4(),
            user_id=user_id,
            amount=grant.grant_amount,
            source=DEPOSIT_SOURCE_GRANT,
            credit_grant_code_id=grant.id,
            description=f"Credit grant {grant.name or grant.code}",
            created_at=now,
        )
        self.session.add(usage)
        self.session.add(deposit)

        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            if USAGE_UNIQUE_CONSTRAINT in str(e):
                metrics.record_grant_redemption("already_redeemed")
                logger.warning("credit_grant_already_redeemed", code=code, user_id=str(user_id))
                raise AlreadyRedeemedError(code, user_id) from e
            metrics.record_error("integrity_error", "redeem_credit_grant")
            logger.error("credit_grant_redeem_integrity_error", error=str(e), code=code)
            raise ConstraintViolationError("credit_grant_code_usages", str(e.orig)) from e

        verified_usage = await self.session.get(CreditGrantCodeUsage, usage.id)
        if verified_usage is None:
            raise WriteVerificationError(f"CreditGrantCodeUsage {usage.id} not found after insert")

        verified_deposit = await self.session.get(CreditDeposit, deposit.id)
        if verified_deposit is None:
            raise WriteVerificationError(f"CreditDeposit {deposit.id} not found after insert")

        await self.session.commit()

        metrics.record_grant_redemption("redeemed")
        logger.info(
            "credit_grant_redeemed",
            grant_id=str(grant.id),
            user_id=str(user_id),
            amount=str(verified_deposit.amount),
        )
        return CreditRedemption(
            usage_id=verified_usage.id,
            deposit_id=verified_deposit.id,
            code=grant.code,
            user_id=user_id,
            amount=verified_deposit.amount,
            redeemed_at=verified_usage.created_at,
        )

    async def list_grants(self, pagination: PaginationParams) -> Page[CreditGrantData]:
        """Unarchived grants, newest first."""
        count_stmt = select(func.count(CreditGrantCode.id)).where(
            CreditGrantCode.is_archived.is_(False)
        )
        count_result = await self.session.execute(count_stmt)
        total_count = count_result.scalar_one() or 0

        stmt = (
            select(CreditGrantCode)
            .where(CreditGrantCode.is_archived.is_(False))
            .order_by(CreditGrantCode.created_at.desc(), CreditGrantCode.id.desc())
            .offset(pagination.offset)
            .limit(pagination.limit)
        )
        result = await self.session.execute(stmt)
        items = [grant_to_domain(grant) for grant in result.scalars().all()]
        return to_page(items, pagination, total_count)

    async def list_grant_usages(
        self, code: str, pagination: PaginationParams
    ) -> Page[GrantUsageItem]:
        """
        Usages of a grant grouped by user, most frequent first.

        total_count is the number of usage rows. A grant nobody redeemed
        yields an empty page with total_count 0.

        Raises:
            NotFoundError: Grant unknown
        """
        grant = await self._find_by_code(code)
        if grant is None:
            raise NotFoundError("CreditGrantCode", code)

        count_stmt = select(func.count(CreditGrantCodeUsage.id)).where(
            CreditGrantCodeUsage.credit_grant_code_id == grant.id
        )
        count_result = await self.session.execute(count_stmt)
        total_count = count_result.scalar_one_or_none() or 0

        usage_count = func.count(CreditGrantCodeUsage.id)
        stmt = (
            select(CreditGrantCodeUsage.user_id, usage_count)
            .where(CreditGrantCodeUsage.credit_grant_code_id == grant.id)
            .group_by(CreditGrantCodeUsage.user_id)
            .order_by(usage_count.desc(), CreditGrantCodeUsage.user_id)
            .offset(pagination.offset)
            .limit(pagination.limit)
        )
        result = await self.session.execute(stmt)
        items = [
            GrantUsageItem(user_id=user_id, usage_count=count) for user_id, count in result.all()
        ]
        return to_page(items, pagination, total_count)

    async def update_grant(
        self,
        grant_id: UUID,
        grant_amount: Decimal | None = None,
        is_archived: bool | None = None,
        name: str | None = None,
        description: str | None = None,
        expires_at: datetime | None = None,
    ) -> CreditGrantData:
        """
        Update a grant's mutable fields. None leaves a field unchanged; the code never changes.

        Raises:
            ValueError: Non-positive amount
            NotFoundError: Grant unknown
        """
        if grant_amount is not None and grant_amount <= 0:
            raise ValueError(f"Grant amount must be positive: {grant_amount}")

        grant = await self.session.get(CreditGrantCode, grant_id)
        if grant is None:
            raise NotFoundError("CreditGrantCode", grant_id)

        if grant_amount is not None:
            grant.grant_amount = quantize_money(grant_amount)
        if is_archived is not None:
            grant.is_archived = is_archived
        if name is not None:
            grant.name = name
        if description is not None:
            grant.description = description
        if expires_at is not None:
            grant.expires_at = expires_at
        grant.updated_at = _utc_now()

        await self.session.flush()
        await self.session.commit()

        logger.info(
            "credit_grant_updated",
            grant_id=str(grant.id),
            amount=str(grant.grant_amount),
            is_archived=grant.is_archived,
        )
        return grant_to_domain(grant)

    async def _find_by_code(self, code: str) -> CreditGrantCode | None:
        """Find a grant by code."""
        stmt = select(CreditGrantCode).where(CreditGrantCode.code == code)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
