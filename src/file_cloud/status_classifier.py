# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Account status classification from live provider errors.

Every failed file operation is passed through here. The classifier maps the
raw transport status and provider error body onto the error taxonomy, moves
the account to the matching status and, for an expired or invalid access
token, attempts exactly one refresh so the caller can retry the operation
once.

    ok --[insufficient scope]--> missing_scopes
    ok --[refresh rejected]--> revoked
    ok --[any other failure]--> error
    missing_scopes / revoked --[reauthentication]--> ok
    error --[revalidation or refresh]--> ok
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx

from .error_handler import (
    AuthRejectedError,
    CloudAuthError,
    InsufficientScopeError,
    NetworkError,
    NoRefreshTokenError,
    ProviderError,
)
from .failure_logger import log_failure
from .registry import AccountRegistry
from .token_refresh import TokenRefreshManager
from .types import Account, AccountStatus
from .utils.credential_formatter import format_account_for_display

lib_logger = logging.getLogger("file_cloud")


class ErrorKind(str, Enum):
    INSUFFICIENT_SCOPE = "insufficient_scope"
    AUTH_EXPIRED = "auth_expired"  # expired or invalid access token
    GRANT_REVOKED = "grant_revoked"
    NETWORK = "network"
    OTHER = "other"


# Markers are matched against the lowercased error body
_REVOKED_MARKERS = ("invalid_grant", "token has been revoked", "token_revoked", "grant_revoked")
_SCOPE_MARKERS = (
    "insufficientpermissions",
    "insufficient_permissions",
    "insufficientfilepermissions",
    "insufficient_scope",
    "insufficientscopes",
    "missing_scope",
    "required_scope",
)
_AUTH_MARKERS = (
    "invalid_token",
    "invalid_access_token",
    "expired_access_token",
    "token_expired",
    "invalidauthenticationtoken",
    "unauthorized",
    "unauthenticated",
)


def _classify_http(status_code: Optional[int], body: str, www_authenticate: str = "") -> ErrorKind:
    body = body.lower()
    www_authenticate = www_authenticate.lower()

    if any(marker in body for marker in _REVOKED_MARKERS):
        return ErrorKind.GRANT_REVOKED

    if status_code == 403:
        if "insufficient_scope" in www_authenticate or any(m in body for m in _SCOPE_MARKERS):
            return ErrorKind.INSUFFICIENT_SCOPE
        if '"forbidden"' in body or "'forbidden'" in body:
            return ErrorKind.INSUFFICIENT_SCOPE

    if status_code == 401 or "invalid_token" in www_authenticate:
        return ErrorKind.AUTH_EXPIRED
    if any(marker in body for marker in _AUTH_MARKERS):
        return ErrorKind.AUTH_EXPIRED

    if status_code is not None and (status_code == 429 or status_code >= 500):
        return ErrorKind.NETWORK

    return ErrorKind.OTHER


def classify_error(error: BaseException) -> ErrorKind:
    """Maps any operation error onto an ErrorKind."""
    if isinstance(error, InsufficientScopeError):
        return ErrorKind.INSUFFICIENT_SCOPE
    if isinstance(error, AuthRejectedError):
        return ErrorKind.GRANT_REVOKED
    if isinstance(error, NetworkError):
        return ErrorKind.NETWORK

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        try:
            body = response.text
        except httpx.ResponseNotRead:
            body = ""
        return _classify_http(
            response.status_code, body, response.headers.get("www-authenticate", "")
        )

    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorKind.NETWORK

    if isinstance(error, ProviderError):
        return _classify_http(error.status_code, f"{error.code or ''} {error.message}")

    return ErrorKind.OTHER


@dataclass(frozen=True)
class Classification:
    """Result of classifying one failed operation."""

    account: Account
    kind: ErrorKind
    error: Optional[CloudAuthError] = None  # None only when a retry is due
    retry: bool = False


class AccountStatusClassifier:
    def __init__(self, registry: AccountRegistry, refresher: TokenRefreshManager):
        self._registry = registry
        self._refresher = refresher

    async def classify(self, account: Account, operation_error: BaseException) -> Account:
        """Classify a failed operation and return the account as now stored."""
        return (await self.assess(account, operation_error)).account

    async def assess(
        self,
        account: Account,
        operation_error: BaseException,
        allow_refresh: bool = True,
    ) -> Classification:
        """
        Classify a failed operation, update the account status and decide
        whether the original operation should be retried.

        ``allow_refresh`` is False when the operation already failed once
        after a refresh; an auth failure then marks the account as errored
        instead of refreshing again.
        """
        kind = classify_error(operation_error)
        display = format_account_for_display(account.provider_type, account.id)
        detail = str(operation_error) or type(operation_error).__name__
        lib_logger.debug(f"Operation on {display} failed ({kind.value}): {detail}")

        if kind is ErrorKind.INSUFFICIENT_SCOPE:
            error = (
                operation_error
                if isinstance(operation_error, InsufficientScopeError)
                else InsufficientScopeError(f"Missing permission: {detail}")
            )
            return await self._mark(account, kind, AccountStatus.MISSING_SCOPES, error, operation_error)

        if kind is ErrorKind.GRANT_REVOKED:
            error = (
                operation_error
                if isinstance(operation_error, AuthRejectedError)
                else AuthRejectedError(f"Grant revoked: {detail}")
            )
            return await self._mark(account, kind, AccountStatus.REVOKED, error, operation_error)

        if kind is ErrorKind.AUTH_EXPIRED:
            if not allow_refresh:
                error = ProviderError(f"Token rejected again after refresh: {detail}")
                return await self._mark(account, kind, AccountStatus.ERROR, error, operation_error)
            return await self._refresh_and_retry(account, operation_error)

        if kind is ErrorKind.NETWORK:
            error = (
                operation_error
                if isinstance(operation_error, NetworkError)
                else NetworkError(f"Network failure: {detail}")
            )
            return await self._mark(account, kind, AccountStatus.ERROR, error, operation_error)

        error = (
            operation_error
            if isinstance(operation_error, ProviderError)
            else ProviderError(detail)
        )
        return await self._mark(account, kind, AccountStatus.ERROR, error, operation_error)

    async def _refresh_and_retry(
        self, account: Account, operation_error: BaseException
    ) -> Classification:
        display = format_account_for_display(account.provider_type, account.id)
        try:
            refreshed = await self._refresher.refresh(account)
        except AuthRejectedError as e:
            # The refresh manager has already persisted the revoked status
            current = await self._registry.require(account.id)
            return Classification(current, ErrorKind.GRANT_REVOKED, e)
        except NoRefreshTokenError as e:
            # Only a new handshake can recover a grant without a refresh token
            return await self._mark(
                account, ErrorKind.AUTH_EXPIRED, AccountStatus.REVOKED, e, operation_error
            )
        except (NetworkError, ProviderError) as e:
            return await self._mark(
                account, ErrorKind.AUTH_EXPIRED, AccountStatus.ERROR, e, operation_error
            )

        lib_logger.info(f"Token for {display} refreshed after auth failure, retrying operation")
        return Classification(refreshed, ErrorKind.AUTH_EXPIRED, retry=True)

    async def _mark(
        self,
        account: Account,
        kind: ErrorKind,
        status: AccountStatus,
        error: CloudAuthError,
        operation_error: BaseException,
    ) -> Classification:
        error.account_id = account.id
        updated = await self._registry.update(
            account.id, lambda a: a.with_status(status, error.message)
        )
        level = logging.WARNING if status.needs_reauth else logging.INFO
        lib_logger.log(
            level,
            f"Account {format_account_for_display(account.provider_type, account.id)} "
            f"is now '{status.value}' ({kind.value})",
        )
        log_failure(
            account.provider_type,
            account.id,
            "operation",
            operation_error,
            resulting_status=status.value,
            details={"kind": kind.value, "error": error.message},
        )
        return Classification(updated, kind, error)
