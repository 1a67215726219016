"""
Credit Service - admin credit mints and deposit history.

Deposits are immutable; a user's balance is derived from deposits minus
ledger spending (see AggregationService.user_balance).
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.db.models import CreditDeposit, User
from echo_ledger.exceptions import NotFoundError, WriteVerificationError
from echo_ledger.models.domain import (
    CreditDepositData,
    Page,
    PaginationParams,
    quantize_money,
    to_page,
)
from echo_ledger.observability.metrics import metrics
from echo_ledger.observability.tracing import traced

logger = get_logger(__name__)

DEPOSIT_SOURCE_ADMIN_MINT = "admin_mint"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def deposit_to_domain(deposit: CreditDeposit) -> CreditDepositData:
    """Convert ORM deposit to domain model."""
    return CreditDepositData(
        deposit_id=deposit.id,
        user_id=deposit.user_id,
        amount=deposit.amount,
        source=deposit.source,
        description=deposit.description,
        created_at=deposit.created_at,
    )


class CreditService:
    """Credit deposits outside the grant flow."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize credit service with database session."""
        self.session = session

    @traced("credits.mint")
    async def mint_credits(
        self, user_id: UUID, amount: Decimal, description: str
    ) -> CreditDepositData:
        """
        Deposit credits directly into a user's balance.

        Raises:
            ValueError: Non-positive amount
            NotFoundError: User doesn't exist
            WriteVerificationError: Row not readable after insert
        """
        if amount <= 0:
            raise ValueError(f"Mint amount must be positive: {amount}")

        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        deposit = CreditDeposit(
            id=uuid4(),
            user_id=user_id,
            amount=quantize_money(amount),
            source=DEPOSIT_SOURCE_ADMIN_MINT,
            credit_grant_code_id=None,
            description=description,
            created_at=_utc_now(),
        )
        self.session.add(deposit)
        await self.session.flush()

        verified = await self.session.get(CreditDeposit, deposit.id)
        if verified is None:
            raise WriteVerificationError(f"CreditDeposit {deposit.id} not found after insert")

        await self.session.commit()

        metrics.credits_minted_total.inc()
        logger.info(
            "credits_minted",
            deposit_id=str(verified.id),
            user_id=str(user_id),
            amount=str(verified.amount),
        )
        return deposit_to_domain(verified)

    async def list_deposits(
        self, user_id: UUID, pagination: PaginationParams
    ) -> Page[CreditDepositData]:
        """A user's deposits, newest first."""
        count_stmt = select(func.count(CreditDeposit.id)).where(CreditDeposit.user_id == user_id)
        count_result = await self.session.execute(count_stmt)
        total_count = count_result.scalar_one() or 0

        stmt = (
            select(CreditDeposit)
            .where(CreditDeposit.user_id == user_id)
            .order_by(CreditDeposit.created_at.desc(), CreditDeposit.id.desc())
            .offset(pagination.offset)
            .limit(pagination.limit)
        )
        result = await self.session.execute(stmt)
        items = [deposit_to_domain(d) for d in result.scalars().all()]
        return to_page(items, pagination, total_count)
