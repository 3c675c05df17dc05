# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Error taxonomy for the account and authentication core.

Only the status classifier, the refresh manager and the token exchanger
translate raw transport/HTTP detail into these types. Everything else
consumes the taxonomy.
"""

from enum import Enum
from typing import Optional


class UserAction(str, Enum):
    """What a UI should offer the end user for a given failure."""

    NONE = "none"
    NOTICE = "notice"  # neutral, non-blocking
    REAUTHENTICATE = "reauthenticate"
    RETRY = "retry"


class CloudAuthError(Exception):
    """Base class for all runtime failures surfaced by the core."""

    user_action: UserAction = UserAction.NONE

    def __init__(self, message: str = "", account_id: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.account_id = account_id


class UserCancelledError(CloudAuthError):
    """The user closed the authentication surface or declined consent."""

    user_action = UserAction.NOTICE


class StateMismatchError(CloudAuthError):
    """A redirect callback did not match the pending handshake state."""


class NetworkError(CloudAuthError):
    """Transient transport failure: timeout, connection error or 5xx."""

    user_action = UserAction.RETRY


class NoRefreshTokenError(CloudAuthError):
    """Refresh cannot even be attempted because no refresh token is stored."""

    user_action = UserAction.REAUTHENTICATE


class AuthRejectedError(CloudAuthError):
    """The intermediary rejected the grant (invalid_grant or equivalent)."""

    user_action = UserAction.REAUTHENTICATE


class InsufficientScopeError(CloudAuthError):
    """The provider refused the call because the grant lacks a scope."""

    user_action = UserAction.REAUTHENTICATE


class ProviderError(CloudAuthError):
    """Opaque passthrough for any other provider or intermediary failure."""

    user_action = UserAction.RETRY

    def __init__(
        self,
        message: str = "",
        account_id: Optional[str] = None,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message, account_id=account_id)
        self.status_code = status_code
        self.code = code


class AccountNotFoundError(CloudAuthError):
    """No account with the requested id exists in the registry."""


class AccountUnavailableError(CloudAuthError):
    """
    Raised without any network call while an account is not usable.

    The user action follows the account status: reauthentication for
    missing scopes or a revoked grant, retry for a generic error.
    """

    def __init__(self, message: str, account_id: Optional[str] = None, status=None):
        super().__init__(message, account_id=account_id)
        self.status = status

    @property
    def user_action(self) -> UserAction:  # type: ignore[override]
        if self.status is not None and self.status.needs_reauth:
            return UserAction.REAUTHENTICATE
        return UserAction.RETRY


class CapabilityViolationError(RuntimeError):
    """
    An operation was invoked that the provider configuration declares
    unsupported. Raised before any network call; not a CloudAuthError.
    """

    def __init__(self, operation: str, provider: str, detail: str = ""):
        message = f"Operation '{operation}' is not supported by provider '{provider}'"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.provider = provider


def is_network_error(e: Exception) -> bool:
    """Checks if the exception is a transient transport failure."""
    return isinstance(e, NetworkError)


def needs_reauthentication(e: Exception) -> bool:
    """Checks if recovering from the exception requires a new OAuth handshake."""
    if isinstance(e, AccountUnavailableError):
        return e.user_action == UserAction.REAUTHENTICATE
    return isinstance(e, (AuthRejectedError, InsufficientScopeError, NoRefreshTokenError))


def is_retryable(e: Exception) -> bool:
    """Checks if the caller may simply retry the same call later."""
    return isinstance(e, (NetworkError, ProviderError))
