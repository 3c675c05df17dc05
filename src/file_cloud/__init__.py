from typing import TYPE_CHECKING

from .capabilities import Operation, ProviderCapabilities
from .config import ProviderConfiguration
from .error_handler import (
    AccountNotFoundError,
    AccountUnavailableError,
    AuthRejectedError,
    CapabilityViolationError,
    CloudAuthError,
    InsufficientScopeError,
    NetworkError,
    NoRefreshTokenError,
    ProviderError,
    StateMismatchError,
    UserAction,
    UserCancelledError,
)
from .registry import AccountRegistry, InMemoryAccountStore
from .scopes import OAuthScope, ProviderType
from .types import Account, AccountStatus, AuthOutcome, CallbackParams

# For type checkers, import the heavier pieces statically
# At runtime, they're lazy-loaded via __getattr__
if TYPE_CHECKING:
    from .manager import CloudAccountManager
    from .persistence import SqlAccountStore
    from .settings import FileCloudSettings, get_settings

__all__ = [
    "Account",
    "AccountNotFoundError",
    "AccountRegistry",
    "AccountStatus",
    "AccountUnavailableError",
    "AuthOutcome",
    "AuthRejectedError",
    "CallbackParams",
    "CapabilityViolationError",
    "CloudAccountManager",
    "CloudAuthError",
    "FileCloudSettings",
    "InMemoryAccountStore",
    "InsufficientScopeError",
    "NetworkError",
    "NoRefreshTokenError",
    "OAuthScope",
    "Operation",
    "ProviderCapabilities",
    "ProviderConfiguration",
    "ProviderError",
    "ProviderType",
    "SqlAccountStore",
    "StateMismatchError",
    "UserAction",
    "UserCancelledError",
    "get_settings",
]


def __getattr__(name):
    """Lazy-load the manager, settings and SQL store to keep the base import light."""
    if name == "CloudAccountManager":
        from .manager import CloudAccountManager

        return CloudAccountManager
    if name == "SqlAccountStore":
        from .persistence import SqlAccountStore

        return SqlAccountStore
    if name == "FileCloudSettings":
        from .settings import FileCloudSettings

        return FileCloudSettings
    if name == "get_settings":
        from .settings import get_settings

        return get_settings
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
