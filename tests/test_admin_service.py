"""
Tests for AdminService.

Covers the admin context gate, user listings and the CSV export format.
"""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import pytest

from conftest import create_mock_app, create_mock_user, make_result
from echo_ledger.db.models import User
from echo_ledger.exceptions import AuthorizationError
from echo_ledger.models.domain import AdminContext, PaginationParams, UserData
from echo_ledger.services.admin import AdminService, render_users_csv


@pytest.fixture
def admin_context() -> AdminContext:
    return AdminContext(user_id=uuid4(), is_admin=True)


class TestAdminContext:
    """The admin check is made once, when the context is built."""

    def test_for_user_rejects_non_admin(self) -> None:
        user = UserData(
            user_id=uuid4(), name=None, email="a@b.c", admin=False, created_at=datetime.now(UTC)
        )

        with pytest.raises(AuthorizationError):
            AdminContext.for_user(user)

    def test_for_user_accepts_admin(self) -> None:
        user = UserData(
            user_id=uuid4(), name=None, email="a@b.c", admin=True, created_at=datetime.now(UTC)
        )

        assert AdminContext.for_user(user).is_admin is True

    def test_service_refuses_non_admin_context(self, db_session: AsyncMock) -> None:
        with pytest.raises(AuthorizationError):
            AdminService(db_session, AdminContext(user_id=uuid4(), is_admin=False))


class TestCsvExport:
    """Tests for the users CSV format."""

    def test_render_exact_format(self) -> None:
        """Every field quoted, ms-precision UTC timestamps, no trailing newline."""
        user = UserData(
            user_id=UUID("11111111-1111-1111-1111-111111111111"),
            name='Ada "The Countess" Lovelace',
            email="ada@example.com",
            admin=False,
            created_at=datetime(2025, 3, 4, 5, 6, 7, 891234, tzinfo=UTC),
        )

        csv_string = render_users_csv([user])

        assert csv_string == (
            '"ID","Name","Email","Created At"\n'
            '"11111111-1111-1111-1111-111111111111","Ada ""The Countess"" Lovelace",'
            '"ada@example.com","2025-03-04T05:06:07.891Z"'
        )

    def test_render_header_only(self) -> None:
        assert render_users_csv([]) == '"ID","Name","Email","Created At"'

    def test_missing_name_is_empty(self) -> None:
        user = UserData(
            user_id=uuid4(),
            name=None,
            email="x@example.com",
            admin=False,
            created_at=datetime(2025, 1, 1, tzinfo=UTC),
        )

        row = render_users_csv([user]).split("\n")[1]
        assert ',"",' in row
        assert row.endswith('"2025-01-01T00:00:00.000Z"')

    async def test_export_filename_and_count(
        self, db_session: AsyncMock, admin_context: AdminContext
    ) -> None:
        users = [create_mock_user(email=f"u{i}@example.com") for i in range(3)]
        db_session.execute = AsyncMock(return_value=make_result(scalars=users))

        export = await AdminService(db_session, admin_context).export_users_csv(
            datetime(2025, 2, 1, tzinfo=UTC)
        )

        assert export.filename == "users-created-after-2025-02-01.csv"
        assert export.user_count == 3
        assert len(export.csv_string.split("\n")) == 4


class TestListings:
    """Tests for user and app listings."""

    async def test_list_users(self, db_session: AsyncMock, admin_context: AdminContext) -> None:
        users = [create_mock_user(), create_mock_user(admin=True)]
        db_session.execute = AsyncMock(
            side_effect=[make_result(count=2), make_result(scalars=users)]
        )

        page = await AdminService(db_session, admin_context).list_users(PaginationParams())

        assert [u.user_id for u in page.items] == [u.id for u in users]
        assert page.total_count == 2

    async def test_list_apps_for_user(
        self, db_session: AsyncMock, admin_context: AdminContext
    ) -> None:
        app = create_mock_app(name="owned")
        db_session.execute = AsyncMock(return_value=make_result(scalars=[app]))

        apps = await AdminService(db_session, admin_context).list_apps_for_user(uuid4())

        assert [a.name for a in apps] == ["owned"]

    async def test_mint_credits_delegates(
        self, db_session: AsyncMock, admin_context: AdminContext
    ) -> None:
        db_session.registry[User] = create_mock_user()

        deposit = await AdminService(db_session, admin_context).mint_credits(
            uuid4(), Decimal("10"), "goodwill"
        )

        assert deposit.amount == Decimal("10")
