import asyncio
import time
from urllib.parse import parse_qs, urlencode, urlparse

import httpx
import pytest

from file_cloud.error_handler import (
    NetworkError,
    ProviderError,
    StateMismatchError,
    UserCancelledError,
)
from file_cloud.oauth_flow import OAuthFlowCoordinator, profile_to_account_fields
from file_cloud.registry import AccountRegistry
from file_cloud.types import AccountStatus, AuthOutcomeKind, CallbackParams

PROFILE = {"id": "user-1", "name": "Alice", "email": "alice@example.com", "locale": "en"}


def _tokens(access_token: str = "a1", refresh_token: str | None = "r1", profile=PROFILE):
    body = {"access_token": access_token, "expires_in": 3600, "token_type": "Bearer", "profile": profile}
    if refresh_token:
        body["refresh_token"] = refresh_token
    return httpx.Response(200, json=body)


def _state_of(auth_url: str) -> str:
    return parse_qs(urlparse(auth_url).query)["state"][0]


class ScriptedSurface:
    """Auth surface that answers with a fixed set of callback parameters."""

    def __init__(self, relay=None, params=None, raises: BaseException | None = None):
        self.relay = relay
        self.params = params if params is not None else {"code": "auth-code"}
        self.raises = raises
        self.launched: list[str] = []

    async def launch(self, auth_url: str, redirect_scheme: str) -> str:
        self.launched.append(auth_url)
        if self.raises is not None:
            raise self.raises
        state = _state_of(auth_url)
        if self.relay is not None:
            self.relay.token_responses[state] = _tokens()
        return f"{redirect_scheme}?{urlencode({**self.params, 'state': state})}"


@pytest.fixture
def coordinator(registry: AccountRegistry, exchanger) -> OAuthFlowCoordinator:
    return OAuthFlowCoordinator(registry, exchanger)


def test_profile_fields_mapping() -> None:
    fields = profile_to_account_fields(
        {"sub": "abc", "displayName": "Bob", "email": "bob@example.com", "photoUrl": "https://p", "tier": "pro"}
    )

    assert fields["external_id"] == "abc"
    assert fields["display_name"] == "Bob"
    assert fields["photo_url"] == "https://p"
    assert fields["metadata"] == {"tier": "pro"}


def test_profile_without_id_falls_back_to_email() -> None:
    fields = profile_to_account_fields({"email": "carol@example.com"})

    assert fields["external_id"] == "carol@example.com"
    assert fields["display_name"] == "carol@example.com"


def test_every_attempt_gets_a_distinct_state(coordinator: OAuthFlowCoordinator, drive_config) -> None:
    handshakes = [coordinator.start_authentication(drive_config) for _ in range(200)]

    states = {h.state for h in handshakes}
    assert len(states) == 200
    assert all(len(s) >= 43 for s in states)
    assert coordinator.pending_count == 200
    assert _state_of(handshakes[0].auth_url) == handshakes[0].state
    assert handshakes[0].auth_url.startswith("https://relay.test/auth/google_drive?state=")


def test_start_rejects_invalid_configuration(coordinator: OAuthFlowCoordinator, drive_config) -> None:
    import dataclasses

    broken = dataclasses.replace(drive_config, display_name="")

    with pytest.raises(ValueError):
        coordinator.start_authentication(broken)
    assert coordinator.pending_count == 0


@pytest.mark.asyncio
async def test_successful_handshake_creates_account(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)
    relay.token_responses[handshake.state] = _tokens()

    outcome = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state=handshake.state), handshake
    )

    assert outcome.kind is AuthOutcomeKind.SUCCESS
    account = outcome.account
    assert account.provider_type == "google_drive"
    assert account.external_id == "user-1"
    assert account.email == "alice@example.com"
    assert account.access_token == "a1"
    assert account.refresh_token == "r1"
    assert account.status is AccountStatus.OK
    assert account.metadata["locale"] == "en"
    assert not account.is_expired()
    assert await registry.list_accounts() == [account]
    assert not coordinator.is_pending(handshake.state)
    assert relay.token_calls()[0].url.path == f"/auth/tokens/{handshake.state}"


@pytest.mark.asyncio
async def test_callback_is_matched_by_state_without_handshake(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)
    relay.token_responses[handshake.state] = _tokens()

    outcome = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state=handshake.state)
    )

    assert outcome.is_success
    assert len(await registry.list_accounts()) == 1


@pytest.mark.asyncio
async def test_state_mismatch_is_rejected_without_mutation(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)

    outcome = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state="forged-state"), handshake
    )

    assert outcome.kind is AuthOutcomeKind.FAILED
    assert isinstance(outcome.error, StateMismatchError)
    assert await registry.list_accounts() == []
    assert relay.calls == []
    # The attempt is over; replaying the genuine state fails too
    replay = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state=handshake.state)
    )
    assert isinstance(replay.error, StateMismatchError)


@pytest.mark.asyncio
async def test_unknown_state_is_rejected(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay
) -> None:
    outcome = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state="never-issued")
    )

    assert isinstance(outcome.error, StateMismatchError)
    assert relay.calls == []
    assert await registry.list_accounts() == []


@pytest.mark.asyncio
async def test_expired_state_is_rejected(
    registry: AccountRegistry, exchanger, relay, drive_config
) -> None:
    coordinator = OAuthFlowCoordinator(registry, exchanger, pending_ttl=0.01)
    handshake = coordinator.start_authentication(drive_config)
    await asyncio.sleep(0.05)

    outcome = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state=handshake.state), handshake
    )

    assert isinstance(outcome.error, StateMismatchError)
    assert relay.calls == []


@pytest.mark.asyncio
async def test_state_is_single_use(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)
    relay.token_responses[handshake.state] = _tokens()
    callback = CallbackParams(code="auth-code", state=handshake.state)

    first = await coordinator.complete_authentication(callback)
    second = await coordinator.complete_authentication(callback)

    assert first.is_success
    assert isinstance(second.error, StateMismatchError)
    assert len(relay.token_calls()) == 1


@pytest.mark.asyncio
async def test_replayed_callback_with_handshake_is_rejected(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)
    relay.token_responses[handshake.state] = _tokens()
    callback = CallbackParams(code="auth-code", state=handshake.state)

    first = await coordinator.complete_authentication(callback, handshake)
    relay.token_responses[handshake.state] = _tokens(access_token="replayed")
    second = await coordinator.complete_authentication(callback, handshake)

    assert first.is_success
    assert isinstance(second.error, StateMismatchError)
    assert len(relay.token_calls()) == 1
    [account] = await registry.list_accounts()
    assert account.access_token == "a1"


@pytest.mark.asyncio
async def test_callback_after_cancel_is_rejected(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)
    relay.token_responses[handshake.state] = _tokens()
    assert coordinator.cancel_authentication(handshake) is True

    outcome = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state=handshake.state), handshake
    )

    assert isinstance(outcome.error, StateMismatchError)
    assert relay.calls == []
    assert await registry.list_accounts() == []


@pytest.mark.asyncio
async def test_closing_the_surface_cancels_without_records(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)

    outcome = await coordinator.complete_authentication(None, handshake)

    assert outcome.was_cancelled
    assert outcome.error is None
    assert await registry.list_accounts() == []
    assert relay.calls == []
    assert not coordinator.is_pending(handshake.state)


@pytest.mark.asyncio
async def test_declined_consent_is_a_cancellation(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)

    outcome = await coordinator.complete_authentication(
        CallbackParams(error="access_denied", state=handshake.state), handshake
    )

    assert outcome.was_cancelled
    assert await registry.list_accounts() == []


@pytest.mark.asyncio
async def test_provider_error_callback_fails(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)

    outcome = await coordinator.complete_authentication(
        CallbackParams(
            error="server_error", error_description="try later", state=handshake.state
        ),
        handshake,
    )

    assert outcome.kind is AuthOutcomeKind.FAILED
    assert isinstance(outcome.error, ProviderError)
    assert outcome.error.code == "server_error"
    assert "try later" in outcome.error.message
    assert await registry.list_accounts() == []


@pytest.mark.asyncio
async def test_callback_without_code_fails(
    coordinator: OAuthFlowCoordinator, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)

    outcome = await coordinator.complete_authentication(
        CallbackParams(state=handshake.state), handshake
    )

    assert isinstance(outcome.error, ProviderError)


@pytest.mark.asyncio
async def test_network_failure_during_retrieval(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)
    relay.token_responses[handshake.state] = httpx.Response(503)

    outcome = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state=handshake.state), handshake
    )

    assert isinstance(outcome.error, NetworkError)
    assert await registry.list_accounts() == []


@pytest.mark.asyncio
async def test_tokens_without_identity_fail(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    handshake = coordinator.start_authentication(drive_config)
    relay.token_responses[handshake.state] = _tokens(profile={})

    outcome = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state=handshake.state), handshake
    )

    assert isinstance(outcome.error, ProviderError)
    assert await registry.list_accounts() == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "previous", [AccountStatus.MISSING_SCOPES, AccountStatus.REVOKED, AccountStatus.ERROR]
)
async def test_reauthentication_restores_existing_account(
    coordinator: OAuthFlowCoordinator,
    registry: AccountRegistry,
    relay,
    drive_config,
    make_account,
    previous,
) -> None:
    existing = await registry.save(
        make_account(access_token="old", refresh_token="old-r", status=previous, last_error="boom")
    )
    handshake = coordinator.start_authentication(drive_config)
    relay.token_responses[handshake.state] = _tokens(access_token="a2", refresh_token=None)

    outcome = await coordinator.complete_authentication(
        CallbackParams(code="auth-code", state=handshake.state), handshake
    )

    account = outcome.account
    assert account.id == existing.id
    assert account.status is AccountStatus.OK
    assert account.last_error is None
    assert account.access_token == "a2"
    assert account.refresh_token == "old-r"
    assert account.created_at == existing.created_at
    assert len(await registry.list_accounts()) == 1


@pytest.mark.asyncio
async def test_authenticate_through_surface(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    surface = ScriptedSurface(relay)

    outcome = await coordinator.authenticate(drive_config, surface)

    assert outcome.is_success
    assert surface.launched[0].startswith("https://relay.test/auth/google_drive?state=")
    assert coordinator.pending_count == 0


@pytest.mark.asyncio
async def test_authenticate_cancelled_by_surface(
    coordinator: OAuthFlowCoordinator, registry: AccountRegistry, relay, drive_config
) -> None:
    surface = ScriptedSurface(raises=UserCancelledError("closed"))

    outcome = await coordinator.authenticate(drive_config, surface)

    assert outcome.was_cancelled
    assert coordinator.pending_count == 0
    assert await registry.list_accounts() == []


@pytest.mark.asyncio
async def test_authenticate_task_cancellation_clears_pending(
    coordinator: OAuthFlowCoordinator, drive_config
) -> None:
    class HangingSurface:
        async def launch(self, auth_url: str, redirect_scheme: str) -> str:
            await asyncio.Event().wait()
            return ""

    task = asyncio.create_task(coordinator.authenticate(drive_config, HangingSurface()))
    await asyncio.sleep(0)
    assert coordinator.pending_count == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert coordinator.pending_count == 0


@pytest.mark.asyncio
async def test_authenticate_requires_a_surface(
    coordinator: OAuthFlowCoordinator, drive_config
) -> None:
    with pytest.raises(ValueError):
        await coordinator.authenticate(drive_config)


def test_expired_attempts_are_pruned(registry: AccountRegistry, exchanger, drive_config) -> None:
    coordinator = OAuthFlowCoordinator(registry, exchanger, pending_ttl=0.01)
    coordinator.start_authentication(drive_config)
    time.sleep(0.05)

    coordinator.start_authentication(drive_config)

    assert coordinator.pending_count == 1
