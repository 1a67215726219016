"""
Markup Resolver - current markup is the most recent history row per app.

There is no "active" flag: the newest MarkUp row (created_at desc, id desc)
wins. Rate changes append a row and never touch older ones.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.db.models import EchoApp, MarkUp
from echo_ledger.exceptions import NotFoundError, WriteVerificationError
from echo_ledger.models.domain import MAX_RATE, ZERO, MarkUpData, quantize_rate

logger = get_logger(__name__)


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def markup_to_domain(markup: MarkUp) -> MarkUpData:
    """Convert ORM markup row to domain model."""
    return MarkUpData(
        markup_id=markup.id,
        app_id=markup.echo_app_id,
        rate=markup.rate,
        created_at=markup.created_at,
    )


class MarkupResolver:
    """Reads and appends per-app markup history."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize markup resolver with database session."""
        self.session = session

    async def current_markup(self, app_id: UUID) -> MarkUpData | None:
        """
        Return the app's current markup, or None when the app has no markup rows.

        Ordering is decided by the query, so insertion order in storage is irrelevant.
        Ties on created_at break on id so the result is deterministic.
        """
        stmt = (
            select(MarkUp)
            .where(MarkUp.echo_app_id == app_id)
            .order_by(MarkUp.created_at.desc(), MarkUp.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        markup = result.scalar_one_or_none()

        if markup is None:
            return None
        return markup_to_domain(markup)

    async def set_markup(self, app_id: UUID, rate: Decimal) -> MarkUpData:
        """
        Append a new markup row for an app.

        Raises:
            ValueError: Negative rate, or too large to store
            NotFoundError: App doesn't exist
            WriteVerificationError: Row not readable after insert
        """
        if rate < 0:
            raise ValueError(f"Markup rate cannot be negative: {rate}")

        # Stored as NUMERIC(12, 6)
        if rate > MAX_RATE or quantize_rate(rate) > MAX_RATE:
            raise ValueError(f"Markup rate exceeds {MAX_RATE}: {rate}")
        rate = quantize_rate(rate)

        app = await self.session.get(EchoApp, app_id)
        if app is None:
            raise NotFoundError("EchoApp", app_id)

        markup = MarkUp(
            id=uuid4(),
            echo_app_id=app_id,
            rate=rate,
            created_at=_utc_now(),
        )
        self.session.add(markup)
        await self.session.flush()

        verified = await self.session.get(MarkUp, markup.id)
        if verified is None:
            raise WriteVerificationError(f"MarkUp {markup.id} not found after insert")

        await self.session.commit()

        logger.info(
            "markup_set",
            app_id=str(app_id),
            markup_id=str(verified.id),
            rate=str(verified.rate),
        )
        return markup_to_domain(verified)

    @staticmethod
    def effective_rate(markup: MarkUpData | None) -> Decimal:
        """Rate to charge; no markup row means zero."""
        if markup is None:
            return ZERO
        return markup.rate
