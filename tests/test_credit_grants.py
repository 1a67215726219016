"""
Tests for CreditGrantService.

Covers grant creation, the once-per-user redemption rule (including
concurrent redeemers racing on the unique constraint), usage listings and
admin updates.
"""

import asyncio
import re
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from conftest import create_mock_grant, create_mock_user, make_result
from echo_ledger.db.models import CreditDeposit, CreditGrantCode, CreditGrantCodeUsage, User
from echo_ledger.exceptions import (
    AlreadyRedeemedError,
    ConstraintViolationError,
    NotFoundError,
)
from echo_ledger.models.domain import PaginationParams
from echo_ledger.services.credit_grants import USAGE_UNIQUE_CONSTRAINT, CreditGrantService


# ============================================================================
# Shared storage for redemption races
# ============================================================================


class UsageStore:
    """In-memory stand-in for the usage table and its (user, grant) unique constraint."""

    def __init__(self, grant: MagicMock) -> None:
        self.grant = grant
        self.usages: set[tuple[UUID, UUID]] = set()
        self.deposits: list[CreditDeposit] = []

    def session(self) -> AsyncMock:
        """A session whose flush enforces the unique constraint against this store."""
        session = AsyncMock(spec=AsyncSession)
        pending: list[Any] = []

        async def _flush() -> None:
            # Yield so concurrent redeemers interleave between check and insert
            await asyncio.sleep(0)
            for obj in pending:
                if isinstance(obj, CreditGrantCodeUsage):
                    key = (obj.user_id, obj.credit_grant_code_id)
                    if key in self.usages:
                        raise IntegrityError(
                            "INSERT INTO credit_grant_code_usages ...",
                            {},
                            Exception(
                                "duplicate key value violates unique constraint "
                                f'"{USAGE_UNIQUE_CONSTRAINT}"'
                            ),
                        )
            for obj in pending:
                if isinstance(obj, CreditGrantCodeUsage):
                    self.usages.add((obj.user_id, obj.credit_grant_code_id))
                elif isinstance(obj, CreditDeposit):
                    self.deposits.append(obj)

        async def _rollback() -> None:
            pending.clear()

        async def _get(model: type, ident: Any) -> Any:
            if model is User:
                return create_mock_user(user_id=ident)
            for obj in pending:
                if isinstance(obj, model) and obj.id == ident:
                    return obj
            return None

        session.add = MagicMock(side_effect=pending.append)
        session.flush = AsyncMock(side_effect=_flush)
        session.rollback = AsyncMock(side_effect=_rollback)
        session.get = AsyncMock(side_effect=_get)
        session.execute = AsyncMock(return_value=make_result(scalar=self.grant))
        return session


# ============================================================================
# Creation and lookup
# ============================================================================


class TestCreateGrant:
    """Tests for create_grant."""

    async def test_creates_with_random_code(self, db_session: AsyncMock) -> None:
        grant = await CreditGrantService(db_session).create_grant(
            Decimal("25"), name="Launch", description="launch promo"
        )

        assert grant.grant_amount == Decimal("25")
        assert grant.is_archived is False
        assert len(grant.code) == 36
        assert isinstance(db_session.added[0], CreditGrantCode)
        db_session.commit.assert_awaited_once()

    async def test_codes_are_unique_per_call(self, db_session: AsyncMock) -> None:
        service = CreditGrantService(db_session)

        first = await service.create_grant(Decimal("1"))
        second = await service.create_grant(Decimal("1"))

        assert first.code != second.code

    @pytest.mark.parametrize("amount", ["0", "-5"])
    async def test_non_positive_amount_rejected(self, db_session: AsyncMock, amount: str) -> None:
        with pytest.raises(ValueError, match="positive"):
            await CreditGrantService(db_session).create_grant(Decimal(amount))

        db_session.add.assert_not_called()

    async def test_code_collision(self, db_session: AsyncMock) -> None:
        db_session.flush = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("credit_grant_codes_code_key"))
        )

        with pytest.raises(ConstraintViolationError):
            await CreditGrantService(db_session).create_grant(Decimal("10"))

        db_session.rollback.assert_awaited_once()


class TestGetGrant:
    """Tests for get_grant."""

    async def test_unknown_code(self, db_session: AsyncMock) -> None:
        assert await CreditGrantService(db_session).get_grant("NOPE") is None

    async def test_archived_grant_still_visible(self, db_session: AsyncMock) -> None:
        grant = create_mock_grant(is_archived=True)
        db_session.execute = AsyncMock(return_value=make_result(scalar=grant))

        found = await CreditGrantService(db_session).get_grant("ABC123")

        assert found is not None
        assert found.is_archived is True


# ============================================================================
# Redemption
# ============================================================================


class TestRedeem:
    """Tests for redeem."""

    async def test_redeem_deposits_grant_amount(self) -> None:
        """Scenario: ABC123 for 500 credits redeemed by U1 deposits 500."""
        store = UsageStore(create_mock_grant(code="ABC123", grant_amount="500"))
        u1 = uuid4()

        redemption = await CreditGrantService(store.session()).redeem("ABC123", u1)

        assert redemption.amount == Decimal("500")
        assert redemption.user_id == u1
        assert redemption.code == "ABC123"
        assert len(store.deposits) == 1
        assert store.deposits[0].source == "grant"

    async def test_second_redemption_rejected(self) -> None:
        """U1 redeeming twice fails; U2 can still redeem."""
        store = UsageStore(create_mock_grant(code="ABC123", grant_amount="500"))
        u1, u2 = uuid4(), uuid4()

        await CreditGrantService(store.session()).redeem("ABC123", u1)
        with pytest.raises(AlreadyRedeemedError) as exc_info:
            await CreditGrantService(store.session()).redeem("ABC123", u1)
        await CreditGrantService(store.session()).redeem("ABC123", u2)

        assert exc_info.value.code == "ABC123"
        assert len(store.usages) == 2
        assert sum(d.amount for d in store.deposits) == Decimal("1000")

    async def test_concurrent_redemptions_one_winner(self) -> None:
        """N concurrent redeemers for the same user: exactly one succeeds."""
        store = UsageStore(create_mock_grant(code="ABC123", grant_amount="500"))
        user_id = uuid4()

        results = await asyncio.gather(
            *(CreditGrantService(store.session()).redeem("ABC123", user_id) for _ in range(8)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 7
        assert all(isinstance(f, AlreadyRedeemedError) for f in failures)
        assert len(store.deposits) == 1

    async def test_unknown_code(self, db_session: AsyncMock) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await CreditGrantService(db_session).redeem("NOPE", uuid4())

        assert exc_info.value.resource == "CreditGrantCode"
        db_session.add.assert_not_called()

    async def test_archived_grant(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(
            return_value=make_result(scalar=create_mock_grant(is_archived=True))
        )

        with pytest.raises(NotFoundError):
            await CreditGrantService(db_session).redeem("ABC123", uuid4())

    async def test_expired_grant(self, db_session: AsyncMock) -> None:
        expired = create_mock_grant(expires_at=datetime.now(UTC) - timedelta(seconds=1))
        db_session.execute = AsyncMock(return_value=make_result(scalar=expired))

        with pytest.raises(NotFoundError):
            await CreditGrantService(db_session).redeem("ABC123", uuid4())

    async def test_future_expiry_is_redeemable(self, db_session: AsyncMock) -> None:
        grant = create_mock_grant(expires_at=datetime.now(UTC) + timedelta(days=1))
        db_session.execute = AsyncMock(return_value=make_result(scalar=grant))
        db_session.registry[User] = create_mock_user()

        redemption = await CreditGrantService(db_session).redeem("ABC123", uuid4())

        assert redemption.amount == Decimal("500")

    async def test_unknown_user(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(return_value=make_result(scalar=create_mock_grant()))

        with pytest.raises(NotFoundError) as exc_info:
            await CreditGrantService(db_session).redeem("ABC123", uuid4())

        assert exc_info.value.resource == "User"

    async def test_other_integrity_error(self, db_session: AsyncMock) -> None:
        """Only the usage constraint maps to AlreadyRedeemedError."""
        db_session.execute = AsyncMock(return_value=make_result(scalar=create_mock_grant()))
        db_session.registry[User] = create_mock_user()
        db_session.flush = AsyncMock(
            side_effect=IntegrityError("INSERT", {}, Exception("credit_deposits_user_id_fkey"))
        )

        with pytest.raises(ConstraintViolationError):
            await CreditGrantService(db_session).redeem("ABC123", uuid4())

        db_session.commit.assert_not_awaited()


# ============================================================================
# Listings
# ============================================================================


class TestListGrantUsages:
    """Tests for list_grant_usages."""

    async def test_unknown_code(self, db_session: AsyncMock) -> None:
        with pytest.raises(NotFoundError):
            await CreditGrantService(db_session).list_grant_usages("NOPE", PaginationParams())

    async def test_unused_grant_is_empty_page(self, db_session: AsyncMock) -> None:
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalar=create_mock_grant()),
                make_result(count=None),
                make_result(rows=[]),
            ]
        )

        page = await CreditGrantService(db_session).list_grant_usages(
            "ABC123", PaginationParams()
        )

        assert page.items == []
        assert page.total_count == 0
        assert page.has_more is False

    async def test_grouped_by_user(self, db_session: AsyncMock) -> None:
        u1, u2 = uuid4(), uuid4()
        db_session.execute = AsyncMock(
            side_effect=[
                make_result(scalar=create_mock_grant()),
                make_result(count=3),
                make_result(rows=[(u1, 2), (u2, 1)]),
            ]
        )

        page = await CreditGrantService(db_session).list_grant_usages(
            "ABC123", PaginationParams()
        )

        assert [(i.user_id, i.usage_count) for i in page.items] == [(u1, 2), (u2, 1)]
        assert page.total_count == 3


def _paging_session(grants: list[MagicMock]) -> AsyncMock:
    """A session that answers list_grants queries by slicing an ordered list."""
    session = AsyncMock(spec=AsyncSession)

    async def _execute(stmt: Any) -> MagicMock:
        sql = str(
            stmt.compile(dialect=postgresql.dialect(), compile_kwargs={"literal_binds": True})
        )
        if "count(" in sql:
            return make_result(count=len(grants))
        match = re.search(r"LIMIT (\d+)(?: OFFSET (\d+))?", sql)
        assert match is not None
        limit = int(match.group(1))
        offset = int(match.group(2) or 0)
        return make_result(scalars=grants[offset : offset + limit])

    session.execute = AsyncMock(side_effect=_execute)
    return session


class TestListGrants:
    """Tests for list_grants."""

    async def test_excludes_archived_newest_first(self, db_session: AsyncMock) -> None:
        await CreditGrantService(db_session).list_grants(PaginationParams())

        sql = str(db_session.execute.call_args_list[1].args[0].compile(
            dialect=postgresql.dialect()
        ))
        assert "credit_grant_codes.is_archived IS false" in sql
        assert "ORDER BY credit_grant_codes.created_at DESC, credit_grant_codes.id DESC" in sql

    @settings(max_examples=50, deadline=None)
    @given(
        total=st.integers(min_value=0, max_value=40),
        page_size=st.integers(min_value=1, max_value=15),
    )
    def test_pages_cover_every_grant_once(self, total: int, page_size: int) -> None:
        """Walking pages until has_more is False yields each grant exactly once."""
        grants = [create_mock_grant(code=f"CODE{i}") for i in range(total)]
        service = CreditGrantService(_paging_session(grants))

        async def _walk() -> list[str]:
            codes: list[str] = []
            page_number = 0
            while True:
                page = await service.list_grants(
                    PaginationParams(page=page_number, page_size=page_size)
                )
                assert page.total_count == total
                assert len(page.items) <= page_size
                codes.extend(item.code for item in page.items)
                if not page.has_more:
                    return codes
                page_number += 1

        assert asyncio.run(_walk()) == [g.code for g in grants]


# ============================================================================
# Updates
# ============================================================================


class TestUpdateGrant:
    """Tests for update_grant."""

    async def test_updates_given_fields_only(self, db_session: AsyncMock) -> None:
        grant = create_mock_grant(grant_amount="500")
        grant.name = "Launch"
        db_session.registry[CreditGrantCode] = grant

        updated = await CreditGrantService(db_session).update_grant(
            grant.id, grant_amount=Decimal("250"), is_archived=True
        )

        assert updated.grant_amount == Decimal("250")
        assert updated.is_archived is True
        assert updated.name == "Launch"
        assert updated.code == "ABC123"
        db_session.commit.assert_awaited_once()

    async def test_unknown_grant(self, db_session: AsyncMock) -> None:
        with pytest.raises(NotFoundError):
            await CreditGrantService(db_session).update_grant(uuid4(), is_archived=True)

    async def test_non_positive_amount(self, db_session: AsyncMock) -> None:
        with pytest.raises(ValueError):
            await CreditGrantService(db_session).update_grant(uuid4(), grant_amount=Decimal("0"))
