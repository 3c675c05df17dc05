# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
OAuth handshake coordination.

The coordinator drives authorize -> redirect -> token retrieval through the
intermediary server. The app never exchanges an authorization code itself
and never sees a client secret: the intermediary performs the exchange and
hands the resulting tokens over under the handshake's ``state``.

Every attempt gets a fresh random ``state`` that stays pending until it is
consumed exactly once. A callback whose state does not match a live pending
attempt is rejected without touching the registry.
"""

import asyncio
import dataclasses
import logging
import secrets
import time
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional

from .config import ProviderConfiguration
from .error_handler import (
    CloudAuthError,
    ProviderError,
    StateMismatchError,
    UserCancelledError,
)
from .exchange import TokenExchanger
from .registry import AccountRegistry
from .types import Account, AuthOutcome, AuthResult, CallbackParams, PendingHandshake

if TYPE_CHECKING:
    from .auth_surface import AuthSurface

lib_logger = logging.getLogger("file_cloud")

STATE_BYTES = 32  # 256 bits of entropy per attempt
DEFAULT_PENDING_STATE_TTL = 600.0

# Callback error codes that mean the user declined consent
_USER_DECLINED_ERRORS = {"access_denied", "user_cancelled", "consent_required"}

_PROFILE_ID_KEYS = ("id", "sub")
_PROFILE_NAME_KEYS = ("name", "displayName", "display_name")
_PROFILE_PHOTO_KEYS = ("picture", "photoUrl", "photo_url")


def _first(profile: Mapping[str, Any], keys) -> Optional[str]:
    for key in keys:
        value = profile.get(key)
        if value:
            return str(value)
    return None


def profile_to_account_fields(profile: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Map an intermediary profile onto account fields.

    ``id``/``sub`` becomes the external id (falling back to the email);
    unrecognised keys are kept as opaque metadata.
    """
    email = str(profile.get("email") or "")
    consumed = set(_PROFILE_ID_KEYS + _PROFILE_NAME_KEYS + _PROFILE_PHOTO_KEYS + ("email",))
    return {
        "external_id": _first(profile, _PROFILE_ID_KEYS) or email,
        "display_name": _first(profile, _PROFILE_NAME_KEYS) or email,
        "email": email,
        "photo_url": _first(profile, _PROFILE_PHOTO_KEYS),
        "metadata": {k: v for k, v in profile.items() if k not in consumed},
    }


class OAuthFlowCoordinator:
    def __init__(
        self,
        registry: AccountRegistry,
        exchanger: TokenExchanger,
        surface: Optional["AuthSurface"] = None,
        pending_ttl: float = DEFAULT_PENDING_STATE_TTL,
    ):
        self._registry = registry
        self._exchanger = exchanger
        self._surface = surface
        self._pending_ttl = pending_ttl
        self._pending: Dict[str, PendingHandshake] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, state: str) -> bool:
        return state in self._pending

    def _prune_expired(self) -> None:
        expired = [s for s, h in self._pending.items() if h.is_expired()]
        for state in expired:
            del self._pending[state]
        if expired:
            lib_logger.debug(f"Discarded {len(expired)} expired pending handshake(s)")

    def _new_state(self) -> str:
        while True:
            state = secrets.token_urlsafe(STATE_BYTES)
            if state not in self._pending:
                return state

    def start_authentication(self, config: ProviderConfiguration) -> PendingHandshake:
        """Begin an attempt: allocate a fresh state and build the authorization URL."""
        config.validate()
        self._prune_expired()

        state = self._new_state()
        now = time.time()
        handshake = PendingHandshake(
            state=state,
            auth_url=config.auth_url_generator(state),
            config=config,
            created_at=now,
            expires_at=now + self._pending_ttl,
        )
        self._pending[state] = handshake
        lib_logger.debug(
            f"Started {config.display_name} authentication ({self.pending_count} pending)"
        )
        return handshake

    def cancel_authentication(self, handshake: PendingHandshake) -> bool:
        """Discard a pending attempt. Returns False if it was no longer pending."""
        return self._pending.pop(handshake.state, None) is not None

    def _consume(
        self, callback: CallbackParams, handshake: Optional[PendingHandshake]
    ) -> PendingHandshake:
        """Pop the pending attempt matching the callback, or raise StateMismatchError."""
        received = callback.state or ""

        if handshake is not None:
            # The attempt ends here whatever the callback carries
            if self._pending.pop(handshake.state, None) is None:
                raise StateMismatchError("Authentication attempt is no longer pending")
            if not secrets.compare_digest(received.encode(), handshake.state.encode()):
                raise StateMismatchError("Callback state does not match this authentication attempt")
            if handshake.is_expired():
                raise StateMismatchError("Authentication attempt expired before the callback arrived")
            return handshake

        pending = self._pending.pop(received, None) if received else None
        if pending is None:
            raise StateMismatchError("Callback state does not match any pending authentication")
        if pending.is_expired():
            raise StateMismatchError("Authentication attempt expired before the callback arrived")
        return pending

    async def complete_authentication(
        self,
        callback: Optional[CallbackParams],
        handshake: Optional[PendingHandshake] = None,
    ) -> AuthOutcome:
        """
        Finish an attempt with the redirect's query parameters.

        ``callback=None`` means the surface was closed without a redirect and
        yields a cancelled outcome. The registry is only written on success.
        """
        if callback is None:
            if handshake is not None:
                self.cancel_authentication(handshake)
            lib_logger.info("Authentication cancelled by the user")
            return AuthOutcome.cancelled()

        try:
            pending = self._consume(callback, handshake)
        except StateMismatchError as e:
            lib_logger.error(f"Rejected OAuth callback: {e.message}")
            return AuthOutcome.failed(e)

        config = pending.config

        if callback.has_error:
            if callback.error in _USER_DECLINED_ERRORS:
                lib_logger.info(f"User declined {config.display_name} consent ({callback.error})")
                return AuthOutcome.cancelled()
            lib_logger.warning(f"{config.display_name} authorization failed: {callback.error_message}")
            return AuthOutcome.failed(
                ProviderError(f"Authorization failed: {callback.error_message}", code=callback.error)
            )

        if not callback.code:
            return AuthOutcome.failed(ProviderError("Callback carried no authorization code"))

        try:
            result = await self._exchanger.retrieve_tokens(config, pending.state)
        except CloudAuthError as e:
            lib_logger.warning(f"Token retrieval for {config.display_name} failed: {e.message}")
            return AuthOutcome.failed(e)

        try:
            account = await self._store_result(config, result)
        except ProviderError as e:
            return AuthOutcome.failed(e)

        who = account.email or account.external_id
        lib_logger.info(f"{config.display_name} account '{who}' authenticated")
        return AuthOutcome.success(account)

    async def _store_result(self, config: ProviderConfiguration, result: AuthResult) -> Account:
        fields = profile_to_account_fields(result.profile)
        external_id = fields["external_id"]
        if not external_id:
            raise ProviderError("Token response carried no user identity")

        metadata = {**fields["metadata"], **result.extra}

        def create() -> Account:
            return Account(
                provider_type=config.provider_key,
                external_id=external_id,
                access_token=result.access_token,
                refresh_token=result.refresh_token,
                expires_at=result.expires_at,
                display_name=fields["display_name"],
                email=fields["email"],
                photo_url=fields["photo_url"],
                metadata=metadata,
            )

        def merge(existing: Account) -> Account:
            renewed = existing.with_tokens(
                result.access_token,
                result.refresh_token or existing.refresh_token,
                result.expires_at,
            )
            return dataclasses.replace(
                renewed,
                display_name=fields["display_name"] or existing.display_name,
                email=fields["email"] or existing.email,
                photo_url=fields["photo_url"] or existing.photo_url,
                metadata={**existing.metadata, **metadata},
            )

        return await self._registry.upsert(config.provider_key, external_id, create, merge)

    async def authenticate(
        self,
        config: ProviderConfiguration,
        surface: Optional["AuthSurface"] = None,
    ) -> AuthOutcome:
        """Run a full attempt through an auth surface and return its single outcome."""
        surface = surface or self._surface
        if surface is None:
            raise ValueError("No authentication surface configured")

        handshake = self.start_authentication(config)
        try:
            callback_url = await surface.launch(handshake.auth_url, config.redirect_scheme)
        except UserCancelledError:
            return await self.complete_authentication(None, handshake)
        except asyncio.CancelledError:
            self.cancel_authentication(handshake)
            raise
        except CloudAuthError as e:
            self.cancel_authentication(handshake)
            return AuthOutcome.failed(e)

        return await self.complete_authentication(CallbackParams.from_url(callback_url), handshake)
