# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the account and authentication core.

This module contains the account record, its status enum, and the
ephemeral values exchanged during an OAuth handshake.
"""

import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Union
from urllib.parse import parse_qs, urlparse

if TYPE_CHECKING:
    from .config import ProviderConfiguration
    from .error_handler import CloudAuthError

lib_logger = logging.getLogger("file_cloud")


# =============================================================================
# ACCOUNT STATUS
# =============================================================================


class AccountStatus(str, Enum):
    """Status of one authenticated grant."""

    OK = "ok"
    MISSING_SCOPES = "missing_scopes"
    REVOKED = "revoked"
    ERROR = "error"
    UNKNOWN = "unknown"  # unrecognised persisted or wire value

    @classmethod
    def from_value(cls, value: Optional[str]) -> "AccountStatus":
        """Parse a stored value; anything unrecognised becomes UNKNOWN."""
        try:
            return cls(value)
        except ValueError:
            lib_logger.warning(f"Unrecognised account status {value!r}, treating as unknown")
            return cls.UNKNOWN

    @property
    def is_usable(self) -> bool:
        return self is AccountStatus.OK

    @property
    def needs_reauth(self) -> bool:
        return self in (
            AccountStatus.MISSING_SCOPES,
            AccountStatus.REVOKED,
            AccountStatus.UNKNOWN,
        )

    @property
    def has_error(self) -> bool:
        return self in (AccountStatus.ERROR, AccountStatus.REVOKED)


# =============================================================================
# ACCOUNT
# =============================================================================


@dataclass(frozen=True)
class Account:
    """
    One authenticated grant to one provider for one external identity.

    Records are immutable: every change produces a new record through
    ``dataclasses.replace`` and is persisted by the registry, so a reader
    always holds either the old or the new token set, never a mix.
    """

    provider_type: str
    external_id: str
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[float] = None  # Unix timestamp, None = non-expiring
    display_name: str = ""
    email: str = ""
    photo_url: Optional[str] = None
    status: AccountStatus = AccountStatus.OK
    last_error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if self.status is AccountStatus.OK and not self.access_token:
            raise ValueError("An account with status 'ok' must carry an access token")

    @property
    def is_usable(self) -> bool:
        return self.status.is_usable

    @property
    def needs_reauth(self) -> bool:
        return self.status.needs_reauth

    @property
    def has_error(self) -> bool:
        return self.status.has_error

    def is_expired(self, buffer_seconds: float = 0) -> bool:
        """True if the access token expires within ``buffer_seconds``."""
        if self.expires_at is None:
            return False
        return self.expires_at < time.time() + buffer_seconds

    def with_tokens(
        self,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[float],
    ) -> "Account":
        """Return a copy carrying a renewed token set and status ok."""
        return dataclasses.replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            status=AccountStatus.OK,
            last_error=None,
            updated_at=max(time.time(), self.updated_at + 1e-6),
        )

    def with_status(self, status: AccountStatus, reason: Optional[str] = None) -> "Account":
        """Return a copy with a new status; ok always clears the last error."""
        return dataclasses.replace(
            self,
            status=status,
            last_error=None if status is AccountStatus.OK else reason,
            updated_at=max(time.time(), self.updated_at + 1e-6),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Account":
        known = {f.name for f in dataclasses.fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values["status"] = AccountStatus.from_value(data.get("status"))
        values["metadata"] = dict(data.get("metadata") or {})
        return cls(**values)


# =============================================================================
# HANDSHAKE VALUES
# =============================================================================


@dataclass(frozen=True)
class CallbackParams:
    """Query parameters carried by the redirect that ends a handshake."""

    code: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    state: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return self.code is not None and self.error is None

    @property
    def has_error(self) -> bool:
        return self.error is not None

    @property
    def error_message(self) -> str:
        if self.error is None:
            return ""
        if self.error_description:
            return f"{self.error}: {self.error_description}"
        return self.error

    @classmethod
    def from_query(cls, params: Mapping[str, Union[str, List[str]]]) -> "CallbackParams":
        def first(key: str) -> Optional[str]:
            value = params.get(key)
            if isinstance(value, list):
                return value[0] if value else None
            return value

        return cls(
            code=first("code"),
            error=first("error"),
            error_description=first("error_description"),
            state=first("state"),
        )

    @classmethod
    def from_url(cls, url: str) -> "CallbackParams":
        return cls.from_query(parse_qs(urlparse(url).query))


@dataclass(frozen=True)
class AuthResult:
    """Token set returned by the intermediary for a handshake or a refresh."""

    success: bool
    access_token: Optional[str] = field(default=None, repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[float] = None
    error: Optional[str] = None
    profile: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and time.time() > self.expires_at

    @classmethod
    def failure(cls, error: str) -> "AuthResult":
        return cls(success=False, error=error)

    @classmethod
    def from_token_response(cls, data: Mapping[str, Any]) -> "AuthResult":
        """
        Build a result from an intermediary JSON body.

        ``expires_in`` may be an int or a numeric string; anything else
        leaves the token non-expiring.
        """
        access_token = data.get("access_token")
        if not access_token:
            return cls.failure("No access token received")

        expires_at = None
        expires_in = data.get("expires_in")
        if expires_in is not None:
            try:
                expires_at = time.time() + int(expires_in)
            except (TypeError, ValueError):
                lib_logger.debug(f"Ignoring unparsable expires_in value {expires_in!r}")

        extra = {
            k: v
            for k, v in data.items()
            if k not in ("access_token", "refresh_token", "expires_in", "token_type", "profile")
        }
        return cls(
            success=True,
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            profile=dict(data.get("profile") or {}),
            extra=extra,
        )


@dataclass(frozen=True)
class PendingHandshake:
    """An authentication attempt awaiting its redirect callback."""

    state: str = field(repr=False)
    auth_url: str = field(repr=False)
    config: "ProviderConfiguration"
    created_at: float = field(default_factory=time.time)
    expires_at: Optional[float] = None

    def is_expired(self) -> bool:
        return self.expires_at is not None and time.time() > self.expires_at


class AuthOutcomeKind(str, Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class AuthOutcome:
    """The single terminal outcome of an authentication attempt."""

    kind: AuthOutcomeKind
    account: Optional[Account] = None
    error: Optional["CloudAuthError"] = None

    @property
    def is_success(self) -> bool:
        return self.kind is AuthOutcomeKind.SUCCESS

    @property
    def was_cancelled(self) -> bool:
        return self.kind is AuthOutcomeKind.CANCELLED

    @classmethod
    def success(cls, account: Account) -> "AuthOutcome":
        return cls(kind=AuthOutcomeKind.SUCCESS, account=account)

    @classmethod
    def cancelled(cls) -> "AuthOutcome":
        return cls(kind=AuthOutcomeKind.CANCELLED)

    @classmethod
    def failed(cls, error: "CloudAuthError") -> "AuthOutcome":
        return cls(kind=AuthOutcomeKind.FAILED, error=error)
