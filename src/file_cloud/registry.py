# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import asyncio
import logging
from typing import Callable, Dict, List, Optional, Protocol

from .error_handler import AccountNotFoundError
from .types import Account
from .utils.credential_formatter import format_account_for_display

lib_logger = logging.getLogger("file_cloud")

AccountMutator = Callable[[Account], Account]


class AccountStore(Protocol):
    """Persistence collaborator behind the registry."""

    async def get_account(self, provider_type: str, external_id: str) -> Optional[Account]: ...

    async def get_account_by_id(self, account_id: str) -> Optional[Account]: ...

    async def save_account(self, account: Account) -> None: ...

    async def delete_account(self, account_id: str) -> bool: ...

    async def list_accounts(self) -> List[Account]: ...


class InMemoryAccountStore:
    """Process-local store; records are immutable so they are shared as-is."""

    def __init__(self):
        self._accounts: Dict[str, Account] = {}

    async def get_account(self, provider_type: str, external_id: str) -> Optional[Account]:
        for account in self._accounts.values():
            if account.provider_type == provider_type and account.external_id == external_id:
                return account
        return None

    async def get_account_by_id(self, account_id: str) -> Optional[Account]:
        return self._accounts.get(account_id)

    async def save_account(self, account: Account) -> None:
        self._accounts[account.id] = account

    async def delete_account(self, account_id: str) -> bool:
        return self._accounts.pop(account_id, None) is not None

    async def list_accounts(self) -> List[Account]:
        return sorted(self._accounts.values(), key=lambda a: a.created_at)


class AccountRegistry:
    """
    Shared owner of every account record.

    All writes go through this class. Each write is a single read-modify-write
    performed under a per-account lock, so a refresh and a status change
    racing on the same account cannot lose each other's update. Identity
    ``(provider_type, external_id)`` is unique across the registry.

    Deleting an account is purely local; no provider endpoint is contacted.
    """

    def __init__(self, store: Optional[AccountStore] = None):
        self._store: AccountStore = store if store is not None else InMemoryAccountStore()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    @property
    def store(self) -> AccountStore:
        return self._store

    async def _get_lock(self, key: str) -> asyncio.Lock:
        """Get or create a lock for an account id or identity key."""
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    @staticmethod
    def _identity_key(provider_type: str, external_id: str) -> str:
        return f"identity:{provider_type}/{external_id}"

    @staticmethod
    def _id_key(account_id: str) -> str:
        return f"id:{account_id}"

    # =========================================================================
    # READS
    # =========================================================================

    async def get(self, provider_type: str, external_id: str) -> Optional[Account]:
        return await self._store.get_account(provider_type, external_id)

    async def get_by_id(self, account_id: str) -> Optional[Account]:
        return await self._store.get_account_by_id(account_id)

    async def require(self, account_id: str) -> Account:
        account = await self._store.get_account_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(f"No account with id '{account_id}'", account_id=account_id)
        return account

    async def list_accounts(self) -> List[Account]:
        return await self._store.list_accounts()

    async def list_by_provider(self, provider_type: str) -> List[Account]:
        return [a for a in await self._store.list_accounts() if a.provider_type == provider_type]

    # =========================================================================
    # WRITES
    # =========================================================================

    async def save(self, account: Account) -> Account:
        """Insert or overwrite a record, enforcing identity uniqueness."""
        identity_lock = await self._get_lock(
            self._identity_key(account.provider_type, account.external_id)
        )
        async with identity_lock:
            existing = await self._store.get_account(account.provider_type, account.external_id)
            if existing is not None and existing.id != account.id:
                raise ValueError(
                    f"An account for {account.provider_type}/{account.external_id} already exists"
                )
            async with await self._get_lock(self._id_key(account.id)):
                await self._store.save_account(account)
        lib_logger.debug(
            f"Saved account {format_account_for_display(account.provider_type, account.id)}"
        )
        return account

    async def update(self, account_id: str, mutator: AccountMutator) -> Account:
        """
        Atomically apply ``mutator`` to the latest stored record.

        The mutator receives the current record and returns its replacement
        (or the same object to leave it untouched). It must not await.
        """
        async with await self._get_lock(self._id_key(account_id)):
            current = await self.require(account_id)
            updated = mutator(current)
            if updated is current:
                return current
            if updated.id != current.id:
                raise ValueError("An account update must not change the account id")
            await self._store.save_account(updated)
            return updated

    async def upsert(
        self,
        provider_type: str,
        external_id: str,
        create: Callable[[], Account],
        merge: AccountMutator,
    ) -> Account:
        """
        Create the account for an identity, or merge into the existing one.

        The identity lock is held throughout, so two handshakes completing
        for the same identity produce one record.
        """
        async with await self._get_lock(self._identity_key(provider_type, external_id)):
            existing = await self._store.get_account(provider_type, external_id)
            if existing is None:
                account = create()
                async with await self._get_lock(self._id_key(account.id)):
                    await self._store.save_account(account)
                lib_logger.info(
                    f"Added account {format_account_for_display(provider_type, account.id)}"
                )
                return account

            async with await self._get_lock(self._id_key(existing.id)):
                current = await self._store.get_account_by_id(existing.id) or existing
                account = merge(current)
                await self._store.save_account(account)
            lib_logger.info(
                f"Updated account {format_account_for_display(provider_type, account.id)}"
            )
            return account

    async def delete(self, account_id: str) -> bool:
        """Remove an account locally. Returns False if it did not exist."""
        id_key = self._id_key(account_id)
        async with await self._get_lock(id_key):
            account = await self._store.get_account_by_id(account_id)
            removed = await self._store.delete_account(account_id)

        keys = [id_key]
        if account is not None:
            keys.append(self._identity_key(account.provider_type, account.external_id))
        await self._discard_locks(keys)

        if removed:
            lib_logger.info(f"Deleted account {account_id[:8]} (local only)")
        return removed

    async def _discard_locks(self, keys: List[str]) -> None:
        """Forget idle locks so deleted accounts do not keep entries alive."""
        async with self._locks_lock:
            for key in keys:
                lock = self._locks.get(key)
                if lock is not None and not lock.locked():
                    del self._locks[key]
