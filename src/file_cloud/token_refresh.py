# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Token refresh with per-account request coalescing.

At most one refresh network call is in flight for a given account id.
Concurrent callers await the same task and observe the same outcome; the
task is shielded so a caller giving up does not cancel it for the others,
and it carries its own timeout.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Iterable, Optional

from .config import ProviderConfiguration, index_configurations
from .error_handler import (
    AuthRejectedError,
    CloudAuthError,
    NetworkError,
    NoRefreshTokenError,
    ProviderError,
)
from .exchange import TokenExchanger
from .failure_logger import log_failure
from .registry import AccountRegistry
from .types import Account, AccountStatus
from .utils.credential_formatter import format_account_for_display, mask_token

lib_logger = logging.getLogger("file_cloud")

# Token refresh buffer in seconds (refresh tokens this far before expiry)
DEFAULT_REFRESH_EXPIRY_BUFFER: int = 5 * 60
DEFAULT_REFRESH_TIMEOUT: float = 15.0


class TokenRefreshManager:
    def __init__(
        self,
        registry: AccountRegistry,
        exchanger: TokenExchanger,
        configurations: Iterable[ProviderConfiguration] = (),
        refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT,
        expiry_buffer: float = DEFAULT_REFRESH_EXPIRY_BUFFER,
    ):
        self._registry = registry
        self._exchanger = exchanger
        self._configurations: Dict[str, ProviderConfiguration] = index_configurations(
            configurations
        )
        self._refresh_timeout = refresh_timeout
        self._expiry_buffer = expiry_buffer
        self._in_flight: Dict[str, asyncio.Task] = {}

    @property
    def expiry_buffer(self) -> float:
        return self._expiry_buffer

    def register_configuration(self, config: ProviderConfiguration) -> None:
        self._configurations[config.provider_key] = config

    def configuration_for(self, account: Account) -> ProviderConfiguration:
        config = self._configurations.get(account.provider_type)
        if config is None:
            raise ProviderError(
                f"No provider configuration registered for '{account.provider_type}'",
                account_id=account.id,
            )
        return config

    def is_refreshing(self, account_id: str) -> bool:
        task = self._in_flight.get(account_id)
        return task is not None and not task.done()

    async def refresh(self, account: Account) -> Account:
        """
        Renew the account's access token through the intermediary.

        Returns the persisted account with the new token set and status ok.

        Raises:
            NoRefreshTokenError: no refresh token is stored; status unchanged.
            AuthRejectedError: the grant is invalid; status is now revoked.
            NetworkError: timeout or transient failure; status unchanged.
            ProviderError: any other failure; status unchanged.
        """
        task = self._in_flight.get(account.id)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(
                self._refresh(account.id, account.access_token)
            )
            self._in_flight[account.id] = task
            task.add_done_callback(lambda t, account_id=account.id: self._on_done(account_id, t))
        else:
            lib_logger.debug(
                f"Joining in-flight refresh for {format_account_for_display(account.provider_type, account.id)}"
            )
        return await asyncio.shield(task)

    def _on_done(self, account_id: str, task: asyncio.Task) -> None:
        if self._in_flight.get(account_id) is task:
            del self._in_flight[account_id]
        # Mark the exception retrieved; every waiter gets it through the shield
        if not task.cancelled():
            task.exception()

    async def _refresh(self, account_id: str, seen_access_token: str) -> Account:
        latest = await self._registry.require(account_id)
        display = format_account_for_display(latest.provider_type, latest.id)

        if not latest.refresh_token:
            lib_logger.warning(f"Cannot refresh {display}: no refresh token stored")
            raise NoRefreshTokenError(
                f"Account {display} has no refresh token", account_id=account_id
            )

        # Another refresh or a reauthentication already replaced the token
        if (
            latest.status is AccountStatus.OK
            and latest.access_token != seen_access_token
            and not latest.is_expired(self._expiry_buffer)
        ):
            lib_logger.debug(f"Token for {display} was renewed concurrently, skipping refresh")
            return latest

        config = self.configuration_for(latest)
        lib_logger.debug(
            f"Refreshing token for {display} (refresh token {mask_token(latest.refresh_token)})"
        )

        try:
            result = await asyncio.wait_for(
                self._exchanger.refresh_tokens(config, latest.refresh_token),
                timeout=self._refresh_timeout,
            )
        except asyncio.TimeoutError as e:
            error = NetworkError(
                f"Refresh timed out after {self._refresh_timeout}s", account_id=account_id
            )
            lib_logger.warning(f"Token refresh for {display} timed out")
            log_failure(latest.provider_type, account_id, "refresh", error)
            raise error from e
        except AuthRejectedError as e:
            e.account_id = account_id
            await self._registry.update(
                account_id, lambda a: a.with_status(AccountStatus.REVOKED, e.message)
            )
            lib_logger.warning(f"Grant for {display} was rejected, account marked revoked")
            log_failure(latest.provider_type, account_id, "refresh", e, AccountStatus.REVOKED.value)
            raise
        except (NetworkError, ProviderError) as e:
            e.account_id = account_id
            lib_logger.warning(f"Token refresh for {display} failed: {e.message}")
            log_failure(latest.provider_type, account_id, "refresh", e)
            raise

        updated = await self._registry.update(
            account_id,
            lambda a: a.with_tokens(
                result.access_token,
                result.refresh_token or a.refresh_token,
                result.expires_at,
            ),
        )
        lib_logger.info(f"Refreshed token for {display}")
        return updated

    async def ensure_fresh(self, account: Account) -> Account:
        """
        Proactively refresh a token that expires within the safety buffer.

        A transient failure keeps the current token as long as it has not
        actually expired yet.
        """
        if not account.refresh_token or not account.is_expired(self._expiry_buffer):
            return account
        try:
            return await self.refresh(account)
        except NetworkError:
            if not account.is_expired():
                lib_logger.warning(
                    f"Proactive refresh failed for {format_account_for_display(account.provider_type, account.id)}, "
                    "using existing token until it expires"
                )
                return account
            raise


@dataclass(frozen=True)
class RefreshSnapshot:
    """One step of a caller-driven retry sequence."""

    attempt: int
    account: Optional[Account] = None
    error: Optional[CloudAuthError] = None
    final: bool = False

    @property
    def succeeded(self) -> bool:
        return self.account is not None


async def refresh_with_retries(
    refresher: TokenRefreshManager,
    account: Account,
    max_attempts: int = 3,
    base_delay: float = 1.0,
) -> AsyncIterator[RefreshSnapshot]:
    """
    Refresh with backoff, yielding one snapshot per attempt.

    Only NetworkError is retried. The sequence is finite and its last
    snapshot has ``final`` set.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(1, max_attempts + 1):
        try:
            refreshed = await refresher.refresh(account)
        except NetworkError as e:
            final = attempt == max_attempts
            yield RefreshSnapshot(attempt=attempt, error=e, final=final)
            if final:
                return
            await asyncio.sleep(base_delay * 2 ** (attempt - 1))
            continue
        except CloudAuthError as e:
            yield RefreshSnapshot(attempt=attempt, error=e, final=True)
            return
        yield RefreshSnapshot(attempt=attempt, account=refreshed, final=True)
        return
