"""
Payment-Request (x402) Authenticator.

Resolves the echo app named in a metered request's headers together with the
app's current markup. Transactions recorded for that request reuse the markup
resolved here.

Outcomes:
- header missing or blank -> None (unauthenticated, not an error)
- app unknown -> AuthenticatedRequest(echo_app=None, markup=None)
- app known -> AuthenticatedRequest(app, current markup or None)
"""

from collections.abc import Mapping
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.db.models import EchoApp
from echo_ledger.exceptions import AuthorizationError, NotFoundError
from echo_ledger.models.api import ECHO_APP_ID_HEADER
from echo_ledger.models.domain import (
    AuthenticatedRequest,
    EchoAppData,
    MarkUpData,
    TransactionData,
    TransactionIntent,
)
from echo_ledger.observability.metrics import metrics
from echo_ledger.observability.tracing import traced
from echo_ledger.services.ledger import TransactionLedger
from echo_ledger.services.markup import MarkupResolver

logger = get_logger(__name__)


def _read_app_id_header(headers: Mapping[str, str]) -> str | None:
    """Case-insensitive header lookup. Blank values count as missing."""
    for key, value in headers.items():
        if key.lower() == ECHO_APP_ID_HEADER:
            value = value.strip()
            return value or None
    return None


class PaymentRequestAuthenticator:
    """Authenticates metered requests and records their transactions."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize authenticator with database session."""
        self.session = session
        self.markups = MarkupResolver(session)
        self.ledger = TransactionLedger(session)

    @traced("x402.authenticate")
    async def authenticate(self, headers: Mapping[str, str]) -> AuthenticatedRequest | None:
        """Resolve the echo app and its current markup from request headers."""
        raw_app_id = _read_app_id_header(headers)
        if raw_app_id is None:
            metrics.record_x402_authentication("no_header")
            return None

        try:
            app_id = UUID(raw_app_id)
        except ValueError:
            app_id = None

        app = await self.session.get(EchoApp, app_id) if app_id is not None else None
        if app is None:
            metrics.record_x402_authentication("unknown_app")
            logger.info("x402_unknown_app", app_id=raw_app_id)
            return AuthenticatedRequest(echo_app=None, markup=None)

        echo_app = EchoAppData(app_id=app.id, name=app.name, created_at=app.created_at)
        markup = await self.markups.current_markup(app.id)

        self.identify_request(echo_app, markup)
        return AuthenticatedRequest(echo_app=echo_app, markup=markup)

    def identify_request(self, echo_app: EchoAppData, markup: MarkUpData | None) -> None:
        """Audit an authenticated payment request."""
        metrics.record_x402_authentication("authenticated")
        logger.info(
            "x402_request_identified",
            app_id=str(echo_app.app_id),
            app_name=echo_app.name,
            markup_id=str(markup.markup_id) if markup else None,
            markup_rate=str(MarkupResolver.effective_rate(markup)),
        )

    async def create_transaction(
        self, intent: TransactionIntent, authenticated: AuthenticatedRequest
    ) -> TransactionData:
        """
        Record a transaction with the markup carried from authentication.

        Raises:
            NotFoundError: The request did not resolve to an app
            AuthorizationError: Intent targets a different app than the one authenticated
        """
        if authenticated.echo_app is None:
            raise NotFoundError("EchoApp", intent.app_id)

        if authenticated.echo_app.app_id != intent.app_id:
            raise AuthorizationError(f"echo_app:{intent.app_id}")

        return await self.ledger.record_transaction(intent, authenticated.markup)
