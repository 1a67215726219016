"""
Tests for domain and API models.

Covers dataclass validation, exact markup pricing and pagination shapes,
with Hypothesis properties for the arithmetic and paging invariants.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from echo_ledger.models.api import (
    CreateCreditGrantRequest,
    MintCreditsRequest,
    PaginatedResponse,
    RefreshTokenRequest,
    SetMarkupRequest,
    TokenResponse,
    UpdateCreditGrantRequest,
    X402TransactionRequest,
    to_paginated_response,
)
from echo_ledger.models.domain import (
    MONEY_QUANTUM,
    AuthenticatedRequest,
    BalanceData,
    MarkUpData,
    Page,
    PaginationParams,
    TimeWindow,
    TokenPair,
    TransactionIntent,
    price_with_markup,
    to_page,
)

# ============================================================================
# Hypothesis Strategies
# ============================================================================

raw_costs = st.decimals(
    min_value=Decimal("0"), max_value=Decimal("100000"), places=10, allow_nan=False
)
markup_rates = st.decimals(
    min_value=Decimal("0"), max_value=Decimal("10"), places=6, allow_nan=False
)


# ============================================================================
# Ledger models
# ============================================================================


class TestTransactionIntent:
    """Tests for TransactionIntent validation."""

    def test_valid(self):
        intent = TransactionIntent(
            user_id=uuid4(), app_id=uuid4(), provider="openai", raw_cost=Decimal("0.1")
        )
        assert intent.request_id is None

    def test_negative_rejected(self):
        with pytest.raises(ValueError, match="negative"):
            TransactionIntent(
                user_id=uuid4(), app_id=uuid4(), provider="openai", raw_cost=Decimal("-0.01")
            )

    def test_float_rejected(self):
        with pytest.raises(TypeError):
            TransactionIntent(user_id=uuid4(), app_id=uuid4(), provider="openai", raw_cost=0.1)

    def test_empty_provider_rejected(self):
        with pytest.raises(ValueError):
            TransactionIntent(user_id=uuid4(), app_id=uuid4(), provider="", raw_cost=Decimal("1"))

    def test_frozen(self):
        intent = TransactionIntent(
            user_id=uuid4(), app_id=uuid4(), provider="openai", raw_cost=Decimal("1")
        )
        with pytest.raises(AttributeError):
            intent.raw_cost = Decimal("2")  # type: ignore[misc]


class TestPriceWithMarkup:
    """Tests for price_with_markup."""

    def test_known_value(self):
        priced = price_with_markup(Decimal("0.1"), Decimal("0.15"))

        assert priced.markup_profit == Decimal("0.015")
        assert priced.total_cost == Decimal("0.115")

    def test_sub_quantum_profit_rounds(self):
        priced = price_with_markup(Decimal("0.0000000001"), Decimal("0.1"))

        assert priced.markup_profit == Decimal("0")
        assert priced.total_cost == priced.raw_cost

    @given(raw=raw_costs, rate=markup_rates)
    def test_total_is_raw_plus_profit(self, raw: Decimal, rate: Decimal):
        priced = price_with_markup(raw, rate)

        assert priced.total_cost == priced.raw_cost + priced.markup_profit
        assert priced.markup_profit >= 0
        assert abs(priced.markup_profit - raw * rate) <= MONEY_QUANTUM

    @given(raw=raw_costs)
    def test_zero_rate_is_identity(self, raw: Decimal):
        priced = price_with_markup(raw, Decimal("0"))

        assert priced.markup_profit == 0
        assert priced.total_cost == raw


class TestAuthenticatedRequest:
    """Tests for AuthenticatedRequest."""

    def test_no_markup_rate_is_zero(self):
        assert AuthenticatedRequest(echo_app=None, markup=None).markup_rate == Decimal("0")

    def test_markup_rate(self):
        markup = MarkUpData(
            markup_id=uuid4(), app_id=uuid4(), rate=Decimal("0.15"), created_at=datetime.now(UTC)
        )
        assert AuthenticatedRequest(echo_app=None, markup=markup).markup_rate == Decimal("0.15")


class TestBalanceData:
    def test_balance(self):
        balance = BalanceData(
            user_id=uuid4(), total_deposited=Decimal("500"), total_spent=Decimal("0.115")
        )
        assert balance.balance == Decimal("499.885")


# ============================================================================
# Pagination and windows
# ============================================================================


class TestPagination:
    """Tests for PaginationParams and Page."""

    def test_defaults(self):
        params = PaginationParams()
        assert (params.page, params.page_size) == (0, 10)
        assert (params.offset, params.limit) == (0, 10)

    def test_negative_page_rejected(self):
        with pytest.raises(ValueError):
            PaginationParams(page=-1)

    def test_zero_page_size_rejected(self):
        with pytest.raises(ValueError):
            PaginationParams(page_size=0)

    def test_empty_page(self):
        page = to_page([], PaginationParams(), 0)
        assert page.has_more is False

    @given(
        total=st.integers(min_value=0, max_value=1000),
        page_size=st.integers(min_value=1, max_value=100),
    )
    def test_slicing_pages_reassembles_everything(self, total: int, page_size: int):
        """Slicing by offset/limit until has_more is False covers every item once."""
        items = list(range(total))
        collected: list[int] = []
        page_number = 0
        while True:
            params = PaginationParams(page=page_number, page_size=page_size)
            page = to_page(
                items[params.offset : params.offset + params.limit], params, total
            )
            collected.extend(page.items)
            if not page.has_more:
                break
            page_number += 1

        assert collected == items

    def test_paginated_response(self):
        page: Page[int] = to_page([1, 2], PaginationParams(page=1, page_size=2), 5)

        response = to_paginated_response(page, ["a", "b"])

        assert isinstance(response, PaginatedResponse)
        assert response.items == ["a", "b"]
        assert response.has_more is True
        assert response.total_count == 5


class TestTimeWindow:
    def test_end_before_start_rejected(self):
        now = datetime.now(UTC)
        with pytest.raises(ValueError):
            TimeWindow(start=now, end=now - timedelta(seconds=1))

    def test_open_bounds(self):
        assert TimeWindow().start is None


# ============================================================================
# API models
# ============================================================================


class TestApiModels:
    """Tests for request/response validation."""

    def test_transaction_request_rejects_negative(self):
        with pytest.raises(ValidationError):
            X402TransactionRequest(user_id=uuid4(), provider="openai", amount=Decimal("-1"))

    def test_transaction_request_keeps_decimal(self):
        request = X402TransactionRequest(user_id=uuid4(), provider="openai", amount="0.1")
        assert request.amount == Decimal("0.1")

    @pytest.mark.parametrize("amount", ["12345678901.5", "0.00000000001"])
    def test_transaction_request_bounded_to_money_column(self, amount):
        with pytest.raises(ValidationError):
            X402TransactionRequest(user_id=uuid4(), provider="openai", amount=amount)

    @pytest.mark.parametrize("rate", ["1234567.12345678", "1000000", "0.1234567"])
    def test_markup_rate_bounded_to_rate_column(self, rate):
        with pytest.raises(ValidationError):
            SetMarkupRequest(rate=rate)

    def test_markup_rate_at_column_limits(self):
        assert SetMarkupRequest(rate="999999.999999").rate == Decimal("999999.999999")

    def test_grant_and_mint_amounts_bounded(self):
        with pytest.raises(ValidationError):
            CreateCreditGrantRequest(grant_amount="1e25")
        with pytest.raises(ValidationError):
            UpdateCreditGrantRequest(grant_amount="0.123456789012")
        with pytest.raises(ValidationError):
            MintCreditsRequest(amount="99999999999999999999")

    def test_create_grant_rejects_unknown_fields(self):
        with pytest.raises(ValidationError):
            CreateCreditGrantRequest(grant_amount=Decimal("1"), code="CUSTOM")

    def test_update_grant_cannot_change_code(self):
        with pytest.raises(ValidationError):
            UpdateCreditGrantRequest(code="NEW")

    def test_refresh_request_grant_type(self):
        with pytest.raises(ValidationError):
            RefreshTokenRequest(grant_type="password", refresh_token="x")

    def test_token_response_expiry(self):
        now = datetime(2025, 1, 1, tzinfo=UTC)
        pair = TokenPair(
            access_token="a",
            access_token_expires_at=now + timedelta(seconds=1),
            refresh_token="r",
            refresh_token_expires_at=now + timedelta(days=30),
            lineage_id=uuid4(),
        )

        response = TokenResponse.from_domain(pair, now)

        assert response.expires_in == 1
        assert response.refresh_token_expires_in == 30 * 24 * 3600
        assert response.token_type == "Bearer"
