"""
Token Lifecycle Manager.

Issues and rotates refresh tokens and signs short-lived access tokens.

SECURITY: This is a critical security component.
- Refresh tokens are stored as SHA-256 hashes (never the raw token)
- A lineage has at most one active refresh token; rotation archives the old
  one with a grace window instead of deleting it
- Concurrent refreshes are decided by a conditional UPDATE on archived_at,
  backed by a partial unique index on the active row
- Access tokens are HS256 JWTs and are not persisted
"""

import hashlib
import secrets
from datetime import UTC, datetime
from uuid import UUID, uuid4

import jwt
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from echo_ledger.config import TokenPolicy
from echo_ledger.db.models import RefreshToken, User
from echo_ledger.exceptions import (
    AuthenticationError,
    NotFoundError,
    TokenExpiredError,
    WriteVerificationError,
)
from echo_ledger.models.domain import AccessClaims, RefreshTokenState, TokenPair
from echo_ledger.observability.metrics import metrics
from echo_ledger.observability.tracing import traced

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def refresh_token_to_state(token: RefreshToken) -> RefreshTokenState:
    """Convert ORM refresh token to domain snapshot."""
    return RefreshTokenState(
        token_id=token.id,
        lineage_id=token.lineage_id,
        user_id=token.user_id,
        app_id=token.echo_app_id,
        expires_at=token.expires_at,
        archived_at=token.archived_at,
        archive_expires_at=token.archive_expires_at,
    )


class TokenLifecycleManager:
    """
    Refresh token rotation with a grace window.

    Usage:
        manager = TokenLifecycleManager(session, get_token_policy())

        pair = await manager.issue_session(user_id, app_id)
        pair = await manager.refresh(pair.refresh_token)
        claims = manager.authenticate_access_token(pair.access_token)
    """

    def __init__(self, session: AsyncSession, policy: TokenPolicy) -> None:
        """Initialize token manager with database session and resolved token policy."""
        self.session = session
        self.policy = policy

    @staticmethod
    def hash_token(token: str) -> str:
        """Hash a token using SHA-256."""
        return hashlib.sha256(token.encode()).hexdigest()

    @staticmethod
    def generate_refresh_token() -> str:
        """Generate an opaque refresh token."""
        return secrets.token_urlsafe(48)

    # ========================================================================
    # Issuance and rotation
    # ========================================================================

    @traced("tokens.issue_session")
    async def issue_session(self, user_id: UUID, echo_app_id: UUID | None = None) -> TokenPair:
        """
        Start a new token lineage for a user.

        Raises:
            NotFoundError: User doesn't exist
            WriteVerificationError: Row not readable after insert
        """
        user = await self.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User", user_id)

        now = _utc_now()
        lineage_id = uuid4()
        raw_token, row = self._new_refresh_row(lineage_id, user_id, echo_app_id, now)
        self.session.add(row)
        await self.session.flush()

        verified = await self.session.get(RefreshToken, row.id)
        if verified is None:
            raise WriteVerificationError(f"RefreshToken {row.id} not found after insert")

        await self.session.commit()

        metrics.tokens_issued_total.inc()
        logger.info(
            "token_session_issued",
            user_id=str(user_id),
            lineage_id=str(lineage_id),
            app_id=str(echo_app_id) if echo_app_id else None,
        )
        return self._token_pair(raw_token, verified, now)

    @traced("tokens.refresh")
    async def refresh(self, refresh_token: str) -> TokenPair:
        """
        Rotate a refresh token.

        An active token is archived with archive_expires_at = now + grace and a
        new active token is issued on the same lineage. An archived token still
        inside its grace window rotates the lineage's current active token
        instead, so a client that lost the response of a previous refresh can
        recover.

        Raises:
            AuthenticationError: Unknown token
            TokenExpiredError: Token expired, past its grace window, or lost a
                concurrent rotation
        """
        now = _utc_now()
        presented = await self._find_by_hash(self.hash_token(refresh_token))

        if presented is None:
            metrics.record_token_rotation("unknown")
            logger.warning("refresh_token_unknown")
            raise AuthenticationError("unknown refresh token")

        self._check_not_expired(presented, now)

        if presented.archived_at is None:
            target = presented
            outcome = "rotated"
        else:
            target = await self._find_active_in_lineage(presented.lineage_id)
            if target is None:
                metrics.record_token_rotation("expired")
                raise TokenExpiredError("refresh token lineage has no active token")
            self._check_not_expired(target, now)
            outcome = "grace_rotated"

        pair = await self._rotate(target, now)

        metrics.record_token_rotation(outcome)
        logger.info(
            "refresh_token_rotated",
            lineage_id=str(target.lineage_id),
            user_id=str(target.user_id),
            outcome=outcome,
        )
        return pair

    async def revoke_lineage(self, lineage_id: UUID) -> int:
        """Archive the lineage's active token with no grace window. Returns rows archived."""
        now = _utc_now()
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.lineage_id == lineage_id, RefreshToken.archived_at.is_(None))
            .values(archived_at=now, archive_expires_at=now)
        )
        result = await self.session.execute(stmt)
        await self.session.commit()

        archived = result.rowcount or 0  # type: ignore[attr-defined]
        logger.info("token_lineage_revoked", lineage_id=str(lineage_id), archived=archived)
        return archived

    # ========================================================================
    # Authentication
    # ========================================================================

    async def authenticate_refresh_token(self, refresh_token: str) -> RefreshTokenState:
        """
        Validate a refresh token without rotating it.

        Valid means active and unexpired, or archived with now < archive_expires_at.

        Raises:
            AuthenticationError: Unknown token
            TokenExpiredError: Expired or past its grace window
        """
        token = await self._find_by_hash(self.hash_token(refresh_token))
        if token is None:
            raise AuthenticationError("unknown refresh token")

        self._check_not_expired(token, _utc_now())
        return refresh_token_to_state(token)

    def authenticate_access_token(self, access_token: str) -> AccessClaims:
        """
        Verify an access token's signature and expiry.

        Raises:
            TokenExpiredError: Signature valid but token expired
            AuthenticationError: Anything else wrong with the token
        """
        try:
            payload = jwt.decode(
                access_token,
                self.policy.jwt_secret,
                algorithms=[self.policy.jwt_algorithm],
                options={"require": ["exp", "sub", "lineage"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError("access token expired") from e
        except jwt.InvalidTokenError as e:
            logger.warning("access_token_invalid", error=str(e))
            raise AuthenticationError("invalid access token") from e

        if payload.get("type") != ACCESS_TOKEN_TYPE:
            raise AuthenticationError("not an access token")

        try:
            app_claim = payload.get("app")
            return AccessClaims(
                user_id=UUID(payload["sub"]),
                lineage_id=UUID(payload["lineage"]),
                app_id=UUID(app_claim) if app_claim else None,
                expires_at=datetime.fromtimestamp(payload["exp"], UTC),
            )
        except (ValueError, TypeError) as e:
            raise AuthenticationError("malformed access token claims") from e

    # ========================================================================
    # Internals
    # ========================================================================

    async def _rotate(self, target: RefreshToken, now: datetime) -> TokenPair:
        """Archive target if still active and insert its successor, atomically."""
        archive = (
            update(RefreshToken)
            .where(RefreshToken.id == target.id, RefreshToken.archived_at.is_(None))
            .values(archived_at=now, archive_expires_at=now + self.policy.archive_grace)
        )
        result = await self.session.execute(archive)
        if result.rowcount != 1:  # type: ignore[attr-defined]
            await self.session.rollback()
            metrics.record_token_rotation("stale")
            logger.warning("refresh_token_rotation_lost", lineage_id=str(target.lineage_id))
            raise TokenExpiredError("refresh token already rotated")

        raw_token, row = self._new_refresh_row(
            target.lineage_id, target.user_id, target.echo_app_id, now
        )
        self.session.add(row)

        try:
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            metrics.record_token_rotation("stale")
            logger.warning("refresh_token_rotation_conflict", lineage_id=str(target.lineage_id))
            raise TokenExpiredError("refresh token already rotated") from e

        verified = await self.session.get(RefreshToken, row.id)
        if verified is None:
            raise WriteVerificationError(f"RefreshToken {row.id} not found after insert")

        await self.session.commit()
        return self._token_pair(raw_token, verified, now)

    def _check_not_expired(self, token: RefreshToken, now: datetime) -> None:
        """Reject tokens past their lifetime or, when archived, past their grace window."""
        if now >= token.expires_at:
            metrics.record_token_rotation("expired")
            raise TokenExpiredError("refresh token expired")

        if token.archived_at is not None:
            if token.archive_expires_at is None or now >= token.archive_expires_at:
                metrics.record_token_rotation("expired")
                logger.info(
                    "refresh_token_past_grace",
                    lineage_id=str(token.lineage_id),
                )
                raise TokenExpiredError("refresh token archived")

    def _new_refresh_row(
        self, lineage_id: UUID, user_id: UUID, echo_app_id: UUID | None, now: datetime
    ) -> tuple[str, RefreshToken]:
        """Build a new active refresh token row. Returns the raw token alongside it."""
        raw_token = self.generate_refresh_token()
        row = RefreshToken(
            id=uuid4(),
            token_hash=self.hash_token(raw_token),
            lineage_id=lineage_id,
            user_id=user_id,
            echo_app_id=echo_app_id,
            created_at=now,
            expires_at=now + self.policy.refresh_token_ttl,
            archived_at=None,
            archive_expires_at=None,
        )
        return raw_token, row

    def _token_pair(self, raw_refresh_token: str, row: RefreshToken, now: datetime) -> TokenPair:
        """Sign an access token for a refresh row and bundle both."""
        access_expires_at = now + self.policy.access_token_ttl
        payload = {
            "sub": str(row.user_id),
            "lineage": str(row.lineage_id),
            "app": str(row.echo_app_id) if row.echo_app_id else None,
            "type": ACCESS_TOKEN_TYPE,
            "iat": now,
            "exp": access_expires_at,
        }
        access_token = jwt.encode(
            payload, self.policy.jwt_secret, algorithm=self.policy.jwt_algorithm
        )
        return TokenPair(
            access_token=access_token,
            access_token_expires_at=access_expires_at,
            refresh_token=raw_refresh_token,
            refresh_token_expires_at=row.expires_at,
            lineage_id=row.lineage_id,
        )

    async def _find_by_hash(self, token_hash: str) -> RefreshToken | None:
        """Find a refresh token row by hash."""
        stmt = select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_active_in_lineage(self, lineage_id: UUID) -> RefreshToken | None:
        """Find the lineage's active refresh token, if any."""
        stmt = select(RefreshToken).where(
            RefreshToken.lineage_id == lineage_id,
            RefreshToken.archived_at.is_(None),
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
