# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
CloudAccountManager - the application-facing entry point.

Wires the registry, token exchanger, coordinator, refresh manager,
classifier and executor together by constructor injection. There is no
module-level singleton; an application builds one manager (usually through
``from_settings``) and passes it where it is needed.
"""

import logging
from typing import Any, Iterable, List, Optional

import httpx

from .auth_surface import AuthSurface, LoopbackBrowserSurface
from .capabilities import Operation
from .config import ProviderConfiguration, index_configurations
from .error_handler import ProviderError
from .exchange import IntermediaryTokenExchanger, TokenExchanger
from .executor import AccountOperation, OperationExecutor
from .oauth_flow import OAuthFlowCoordinator
from .registry import AccountRegistry, AccountStore, InMemoryAccountStore
from .settings import FileCloudSettings, get_settings
from .status_classifier import AccountStatusClassifier
from .token_refresh import TokenRefreshManager
from .types import Account, AuthOutcome

lib_logger = logging.getLogger("file_cloud")


class CloudAccountManager:
    def __init__(
        self,
        registry: AccountRegistry,
        exchanger: TokenExchanger,
        configurations: Iterable[ProviderConfiguration],
        surface: Optional[AuthSurface] = None,
        refresh_timeout: float = 15.0,
        refresh_buffer: float = 5 * 60,
        pending_ttl: float = 600.0,
        http_client: Optional[httpx.AsyncClient] = None,
        store: Optional[AccountStore] = None,
    ):
        self.configurations = index_configurations(configurations)
        self.registry = registry
        self.refresher = TokenRefreshManager(
            registry,
            exchanger,
            self.configurations.values(),
            refresh_timeout=refresh_timeout,
            expiry_buffer=refresh_buffer,
        )
        self.coordinator = OAuthFlowCoordinator(
            registry, exchanger, surface=surface, pending_ttl=pending_ttl
        )
        self.classifier = AccountStatusClassifier(registry, self.refresher)
        self.executor = OperationExecutor(registry, self.refresher, self.classifier)

        # Resources owned by this manager, closed by aclose()
        self._http_client = http_client
        self._store = store

    @classmethod
    async def from_settings(
        cls,
        settings: Optional[FileCloudSettings] = None,
        surface: Optional[AuthSurface] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "CloudAccountManager":
        """Build a manager from environment settings."""
        settings = settings or get_settings()

        store: AccountStore
        owned_store = None
        if settings.database_url:
            from .persistence import SqlAccountStore

            owned_store = await SqlAccountStore.create(
                settings.database_url, settings.sqlite_busy_timeout_ms
            )
            store = owned_store
        else:
            store = InMemoryAccountStore()

        owned_client = None
        if http_client is None:
            owned_client = httpx.AsyncClient(timeout=settings.token_timeout_seconds)
            http_client = owned_client

        manager = cls(
            AccountRegistry(store),
            IntermediaryTokenExchanger(http_client, timeout=settings.token_timeout_seconds),
            settings.provider_configurations(),
            surface=surface or LoopbackBrowserSurface(timeout=settings.auth_timeout_seconds),
            refresh_timeout=settings.refresh_timeout_seconds,
            refresh_buffer=settings.refresh_buffer_seconds,
            pending_ttl=settings.pending_state_ttl_seconds,
            http_client=owned_client,
            store=owned_store,
        )
        lib_logger.debug(
            f"Account manager ready for providers: {', '.join(manager.configurations)}"
        )
        return manager

    def configuration(self, provider_key: str) -> ProviderConfiguration:
        config = self.configurations.get(provider_key)
        if config is None:
            raise ProviderError(f"No provider configuration registered for '{provider_key}'")
        return config

    async def authenticate(self, provider_key: str) -> AuthOutcome:
        """Connect a new account, or renew an existing one for the same identity."""
        return await self.coordinator.authenticate(self.configuration(provider_key))

    async def reauthenticate(self, account_id: str) -> AuthOutcome:
        """
        Run a fresh handshake for an existing account's provider.

        A successful outcome for the same identity resets the account to ok
        and clears its last error.
        """
        account = await self.registry.require(account_id)
        outcome = await self.authenticate(account.provider_type)
        if outcome.is_success and outcome.account.id != account.id:
            lib_logger.warning(
                f"Reauthentication for account {account.id[:8]} signed in a different identity"
            )
        return outcome

    async def execute(
        self, account_id: str, operation: Operation, fn: AccountOperation
    ) -> Any:
        return await self.executor.execute(account_id, operation, fn)

    async def refresh(self, account_id: str) -> Account:
        return await self.refresher.refresh(await self.registry.require(account_id))

    async def revalidate(self, account_id: str, probe: AccountOperation) -> Account:
        return await self.executor.revalidate(account_id, probe)

    async def delete_account(self, account_id: str) -> bool:
        """Forget an account locally. The provider grant is left untouched."""
        return await self.registry.delete(account_id)

    async def list_accounts(self, provider_key: Optional[str] = None) -> List[Account]:
        if provider_key is None:
            return await self.registry.list_accounts()
        return await self.registry.list_by_provider(provider_key)

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
        if self._store is not None and hasattr(self._store, "aclose"):
            await self._store.aclose()
