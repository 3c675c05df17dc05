import logging
from contextlib import asynccontextmanager
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from auth_relay.config import (
    ProviderCredentials,
    ProviderEndpoints,
    RelaySettings,
    get_relay_settings,
)
from auth_relay.state_store import RelayStateStore, TokensNotReady

logger = logging.getLogger("auth_relay")

router = APIRouter(prefix="/auth", tags=["auth"])


class RefreshRequest(BaseModel):
    refresh_token: str


def _error(status_code: int, error: str, description: str | None = None) -> JSONResponse:
    body = {"error": error}
    if description:
        body["error_description"] = description
    return JSONResponse(status_code=status_code, content=body)


def _return_to_app(settings: RelaySettings, **params: str) -> RedirectResponse:
    separator = "&" if "?" in settings.app_redirect else "?"
    query = urlencode({k: v for k, v in params.items() if v is not None})
    return RedirectResponse(
        f"{settings.app_redirect}{separator}{query}", status_code=status.HTTP_302_FOUND
    )


def _provider_error(response: httpx.Response) -> tuple[str, str | None]:
    try:
        data = response.json()
    except ValueError:
        return "provider_error", response.text[:200] or None
    if not isinstance(data, dict):
        return "provider_error", None
    error = data.get("error") or "provider_error"
    if isinstance(error, dict):
        error = error.get("code") or error.get("status") or "provider_error"
    return str(error), data.get("error_description")


async def _exchange_code(
    client: httpx.AsyncClient,
    settings: RelaySettings,
    endpoints: ProviderEndpoints,
    creds: ProviderCredentials,
    code: str,
) -> dict:
    response = await client.post(
        endpoints.token_url,
        data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": settings.callback_url,
            "client_id": creds.client_id,
            "client_secret": creds.client_secret,
        },
        headers={"Accept": "application/json"},
        timeout=settings.upstream_timeout_seconds,
    )
    response.raise_for_status()
    data = response.json()
    if "error" in data or not data.get("access_token"):
        raise ValueError(f"Token endpoint returned no access token: {data.get('error')}")
    return data


async def _fetch_profile(
    client: httpx.AsyncClient,
    settings: RelaySettings,
    endpoints: ProviderEndpoints,
    access_token: str,
) -> dict:
    response = await client.request(
        endpoints.profile_method,
        endpoints.profile_url,
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=settings.upstream_timeout_seconds,
    )
    response.raise_for_status()
    return endpoints.profile_mapper(response.json())


@router.get("/callback")
async def oauth_callback(request: Request) -> RedirectResponse:
    settings: RelaySettings = request.app.state.settings
    states: RelayStateStore = request.app.state.states
    params = request.query_params

    state = params.get("state")
    entry = states.get(state) if state else None
    if entry is None:
        logger.warning("Callback for unknown or expired state")
        return _return_to_app(settings, error="invalid_state", state=state)

    if params.get("error"):
        states.fail(state, params["error"])
        return _return_to_app(
            settings,
            error=params["error"],
            error_description=params.get("error_description"),
            state=state,
        )

    code = params.get("code")
    if not code:
        states.fail(state, "invalid_request")
        return _return_to_app(settings, error="invalid_request", state=state)

    provider = settings.provider(entry.provider)
    if provider is None:
        states.fail(state, "unsupported_provider")
        return _return_to_app(settings, error="unsupported_provider", state=state)
    endpoints, creds = provider

    client: httpx.AsyncClient = request.app.state.http_client
    try:
        token_data = await _exchange_code(client, settings, endpoints, creds, code)
        profile = await _fetch_profile(client, settings, endpoints, token_data["access_token"])
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"Token exchange for {entry.provider} failed: {e}")
        states.fail(state, "token_exchange_failed")
        return _return_to_app(settings, error="token_exchange_failed", state=state)

    states.complete(
        state,
        {
            "access_token": token_data["access_token"],
            "refresh_token": token_data.get("refresh_token"),
            "expires_in": token_data.get("expires_in"),
            "token_type": token_data.get("token_type", "Bearer"),
            "scope": token_data.get("scope"),
            "profile": profile,
        },
    )
    logger.info(f"Completed {entry.provider} token exchange")
    return _return_to_app(settings, code=code, state=state)


@router.get("/tokens/{state}")
async def get_tokens(state: str, request: Request) -> JSONResponse:
    states: RelayStateStore = request.app.state.states
    try:
        tokens = states.take_tokens(state)
    except TokensNotReady as e:
        if str(e) == "tokens_not_ready":
            return _error(400, "tokens_not_ready", "Tokens have not been obtained yet")
        return _error(400, str(e), "Authorization did not complete")
    if tokens is None:
        return _error(404, "invalid_state", "State not found or expired")
    return JSONResponse(content=tokens)


@router.get("/{provider}")
async def start_auth(provider: str, request: Request):
    settings: RelaySettings = request.app.state.settings
    states: RelayStateStore = request.app.state.states

    configured = settings.provider(provider)
    if configured is None:
        return _error(404, "unsupported_provider", f"Provider '{provider}' is not configured")
    endpoints, creds = configured

    state = request.query_params.get("state")
    if not state:
        return _error(400, "invalid_request", "Missing state parameter")

    states.begin(state, provider)
    query = {
        "client_id": creds.client_id,
        "redirect_uri": settings.callback_url,
        "response_type": "code",
        "scope": " ".join(endpoints.scopes),
        "state": state,
        **endpoints.extra_authorize_params,
    }
    return RedirectResponse(
        f"{endpoints.authorize_url}?{urlencode(query)}", status_code=status.HTTP_302_FOUND
    )


@router.post("/{provider}/refresh")
async def refresh(provider: str, payload: RefreshRequest, request: Request) -> JSONResponse:
    settings: RelaySettings = request.app.state.settings
    configured = settings.provider(provider)
    if configured is None:
        return _error(404, "unsupported_provider", f"Provider '{provider}' is not configured")
    endpoints, creds = configured

    client: httpx.AsyncClient = request.app.state.http_client
    try:
        response = await client.post(
            endpoints.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": payload.refresh_token,
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
            },
            headers={"Accept": "application/json"},
            timeout=settings.upstream_timeout_seconds,
        )
    except httpx.HTTPError as e:
        logger.warning(f"Refresh for {provider} could not reach the provider: {e}")
        return _error(502, "upstream_unavailable", "Provider token endpoint unreachable")

    if response.status_code >= 500:
        return _error(502, "upstream_unavailable", f"Provider returned HTTP {response.status_code}")
    if response.status_code != 200:
        error, description = _provider_error(response)
        logger.info(f"Provider rejected refresh for {provider}: {error}")
        return _error(400, error, description)

    data = response.json()
    if not data.get("access_token"):
        return _error(502, "invalid_provider_response", "Provider returned no access token")

    body = {
        "access_token": data["access_token"],
        "expires_in": data.get("expires_in"),
        "token_type": data.get("token_type", "Bearer"),
    }
    # Providers that do not rotate refresh tokens omit this field
    if data.get("refresh_token"):
        body["refresh_token"] = data["refresh_token"]
    return JSONResponse(content=body)


def create_app(
    settings: RelaySettings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the relay application. Serve it with any ASGI server."""
    settings = settings or get_relay_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_client = None
        if getattr(app.state, "http_client", None) is None:
            owned_client = httpx.AsyncClient()
            app.state.http_client = owned_client
        yield
        if owned_client is not None:
            await owned_client.aclose()

    app = FastAPI(title="file_cloud auth relay", lifespan=lifespan)
    app.state.settings = settings
    app.state.states = RelayStateStore(settings.state_ttl_seconds)
    app.state.http_client = http_client

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(router)
    return app
