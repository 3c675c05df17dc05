# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Guarded execution of provider file operations.

Each operation goes through the same path: capability check, sticky-failure
check, proactive refresh, the call itself and, on failure, classification
with at most one retry after a successful refresh.
"""

import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .capabilities import Operation, require
from .config import ProviderConfiguration
from .error_handler import (
    AccountUnavailableError,
    CapabilityViolationError,
    NetworkError,
    ProviderError,
)
from .registry import AccountRegistry
from .status_classifier import AccountStatusClassifier
from .token_refresh import TokenRefreshManager
from .types import Account, AccountStatus
from .utils.credential_formatter import format_account_for_display

lib_logger = logging.getLogger("file_cloud")

T = TypeVar("T")
AccountOperation = Callable[[Account], Awaitable[T]]


class OperationExecutor:
    def __init__(
        self,
        registry: AccountRegistry,
        refresher: TokenRefreshManager,
        classifier: AccountStatusClassifier,
    ):
        self._registry = registry
        self._refresher = refresher
        self._classifier = classifier

    @staticmethod
    def _check_usable(account: Account) -> None:
        """Sticky failure: a non-ok account fails fast without any network call."""
        if account.status is AccountStatus.OK:
            return
        raise AccountUnavailableError(
            f"Account {format_account_for_display(account.provider_type, account.id)} "
            f"is '{account.status.value}'"
            + (f": {account.last_error}" if account.last_error else ""),
            account_id=account.id,
            status=account.status,
        )

    async def execute(
        self,
        account_id: str,
        operation: Operation,
        fn: AccountOperation,
        config: Optional[ProviderConfiguration] = None,
    ) -> Any:
        """
        Run ``fn(account)`` as ``operation`` on behalf of an account.

        Args:
            account_id: Registry id of the account to act as.
            operation: The file operation, checked against the capabilities.
            fn: Coroutine function performing the provider call with the
                account's current access token.
            config: Provider configuration; looked up from the account's
                provider key when omitted.

        Raises:
            CapabilityViolationError: the provider does not declare ``operation``.
            AccountUnavailableError: the account is not ok.
            CloudAuthError: the classified failure of the call.
        """
        account = await self._registry.require(account_id)
        config = config or self._refresher.configuration_for(account)
        require(config, operation)
        self._check_usable(account)

        prepared = await self._prepare(account)
        # A token renewed just now is not refreshed a second time on an auth failure
        renewed = prepared.access_token != account.access_token
        return await self._run(prepared, fn, operation.value, allow_refresh=not renewed)

    async def revalidate(self, account_id: str, probe: AccountOperation) -> Account:
        """
        Explicitly recover an account from the generic error state.

        Runs ``probe`` (typically a cheap listing call); on success the account
        returns to ok. Accounts needing reauthentication are refused.
        """
        account = await self._registry.require(account_id)
        if account.status not in (AccountStatus.OK, AccountStatus.ERROR):
            self._check_usable(account)

        prepared = await self._prepare(account)
        renewed = prepared.access_token != account.access_token
        await self._run(prepared, probe, "revalidate", allow_refresh=not renewed)

        updated = await self._registry.update(
            account_id,
            lambda a: a if a.status is AccountStatus.OK else a.with_status(AccountStatus.OK),
        )
        lib_logger.info(
            f"Account {format_account_for_display(updated.provider_type, updated.id)} revalidated"
        )
        return updated

    async def _prepare(self, account: Account) -> Account:
        try:
            return await self._refresher.ensure_fresh(account)
        except (NetworkError, ProviderError) as e:
            outcome = await self._classifier.assess(account, e, allow_refresh=False)
            raise outcome.error from e

    async def _run(
        self,
        account: Account,
        fn: AccountOperation,
        label: str,
        allow_refresh: bool = True,
    ) -> Any:
        while True:
            try:
                return await fn(account)
            except CapabilityViolationError:
                raise
            except Exception as e:
                outcome = await self._classifier.assess(account, e, allow_refresh=allow_refresh)
                if outcome.retry:
                    lib_logger.debug(f"Retrying '{label}' once with the refreshed token")
                    account = outcome.account
                    allow_refresh = False
                    continue
                raise outcome.error from e
