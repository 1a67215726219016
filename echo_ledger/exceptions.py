"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class LedgerError(Exception):
    """Base exception for all ledger errors."""

    pass


class NotFoundError(LedgerError):
    """Raised when a referenced entity doesn't exist."""

    def __init__(self, resource: str, identifier: str | UUID) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class AlreadyRedeemedError(LedgerError):
    """Raised when a user tries to redeem the same credit grant twice."""

    def __init__(self, code: str, user_id: UUID) -> None:
        self.code = code
        self.user_id = user_id
        super().__init__(f"Credit grant {code} already redeemed by user {user_id}")


class AuthenticationError(LedgerError):
    """Raised when a credential is missing, unknown or otherwise invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class TokenExpiredError(AuthenticationError):
    """Raised when a token is past its expiry or its rotation grace window."""

    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message)


class AuthorizationError(LedgerError):
    """Raised when user lacks required permissions."""

    def __init__(self, required_permission: str) -> None:
        self.required_permission = required_permission
        super().__init__(f"Authorization failed: missing permission {required_permission}")


class InvalidConfigurationError(LedgerError):
    """Raised for a malformed configuration override. Always recovered by fallback."""

    def __init__(self, setting: str, value: str) -> None:
        self.setting = setting
        self.value = value
        super().__init__(f"Invalid configuration value for {setting}: {value!r}")


class ConstraintViolationError(LedgerError):
    """Raised when a storage-level uniqueness or referential constraint fails."""

    def __init__(self, constraint: str, message: str) -> None:
        self.constraint = constraint
        self.message = message
        super().__init__(f"Constraint {constraint} violated: {message}")


class WriteVerificationError(LedgerError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")
