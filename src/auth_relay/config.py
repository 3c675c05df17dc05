import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from dotenv import load_dotenv

logger = logging.getLogger("auth_relay")

DEFAULT_PUBLIC_URL = "http://localhost:8000"
DEFAULT_REDIRECT_SCHEME = "http://127.0.0.1:8765/auth/callback"
DEFAULT_STATE_TTL_SECONDS = 600
DEFAULT_UPSTREAM_TIMEOUT_SECONDS = 30.0


class RelayConfigurationError(RuntimeError):
    pass


def _google_profile(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": raw.get("id") or raw.get("sub"),
        "name": raw.get("name"),
        "email": raw.get("email"),
        "picture": raw.get("picture"),
    }


def _onedrive_profile(raw: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": raw.get("id"),
        "name": raw.get("displayName"),
        "email": raw.get("mail") or raw.get("userPrincipalName"),
        "picture": None,
    }


def _dropbox_profile(raw: Mapping[str, Any]) -> dict[str, Any]:
    name = raw.get("name") or {}
    return {
        "id": raw.get("account_id"),
        "name": name.get("display_name") if isinstance(name, dict) else None,
        "email": raw.get("email"),
        "picture": raw.get("profile_photo_url"),
    }


@dataclass(frozen=True)
class ProviderEndpoints:
    authorize_url: str
    token_url: str
    profile_url: str
    scopes: tuple[str, ...]
    profile_mapper: Callable[[Mapping[str, Any]], dict[str, Any]] = field(repr=False)
    profile_method: str = "GET"
    extra_authorize_params: Mapping[str, str] = field(default_factory=dict)


PROVIDER_ENDPOINTS: dict[str, ProviderEndpoints] = {
    "google_drive": ProviderEndpoints(
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        profile_url="https://www.googleapis.com/oauth2/v2/userinfo",
        scopes=(
            "https://www.googleapis.com/auth/drive",
            "https://www.googleapis.com/auth/userinfo.profile",
            "https://www.googleapis.com/auth/userinfo.email",
        ),
        profile_mapper=_google_profile,
        # offline access is what yields a refresh token
        extra_authorize_params={"access_type": "offline", "prompt": "consent"},
    ),
    "one_drive": ProviderEndpoints(
        authorize_url="https://login.microsoftonline.com/common/oauth2/v2.0/authorize",
        token_url="https://login.microsoftonline.com/common/oauth2/v2.0/token",
        profile_url="https://graph.microsoft.com/v1.0/me",
        scopes=("Files.ReadWrite", "User.Read", "offline_access"),
        profile_mapper=_onedrive_profile,
    ),
    "dropbox": ProviderEndpoints(
        authorize_url="https://www.dropbox.com/oauth2/authorize",
        token_url="https://api.dropboxapi.com/oauth2/token",
        profile_url="https://api.dropboxapi.com/2/users/get_current_account",
        scopes=(
            "files.content.read",
            "files.content.write",
            "files.metadata.read",
            "account_info.read",
        ),
        profile_mapper=_dropbox_profile,
        profile_method="POST",
        extra_authorize_params={"token_access_type": "offline"},
    ),
}


@dataclass(frozen=True)
class ProviderCredentials:
    client_id: str
    client_secret: str = field(repr=False)


@dataclass(frozen=True)
class RelaySettings:
    public_url: str = DEFAULT_PUBLIC_URL
    app_redirect: str = DEFAULT_REDIRECT_SCHEME
    state_ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS
    upstream_timeout_seconds: float = DEFAULT_UPSTREAM_TIMEOUT_SECONDS
    credentials: dict[str, ProviderCredentials] = field(default_factory=dict)

    @property
    def callback_url(self) -> str:
        return f"{self.public_url.rstrip('/')}/auth/callback"

    def provider(self, name: str) -> tuple[ProviderEndpoints, ProviderCredentials] | None:
        endpoints = PROVIDER_ENDPOINTS.get(name)
        creds = self.credentials.get(name)
        if endpoints is None or creds is None:
            return None
        return endpoints, creds


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        logger.warning(f"Invalid {name} value: {raw}, using default {default}")
        return default


def get_relay_settings() -> RelaySettings:
    load_dotenv()

    credentials: dict[str, ProviderCredentials] = {}
    for provider in PROVIDER_ENDPOINTS:
        prefix = f"RELAY_{provider.upper()}"
        client_id = (os.getenv(f"{prefix}_CLIENT_ID") or "").strip()
        client_secret = (os.getenv(f"{prefix}_CLIENT_SECRET") or "").strip()
        if client_id and client_secret:
            credentials[provider] = ProviderCredentials(client_id, client_secret)
        elif client_id or client_secret:
            raise RelayConfigurationError(
                f"{prefix}_CLIENT_ID and {prefix}_CLIENT_SECRET must be set together"
            )

    if not credentials:
        logger.warning("No provider credentials configured; every /auth/<provider> call will 404")

    return RelaySettings(
        public_url=(os.getenv("RELAY_PUBLIC_URL") or "").strip() or DEFAULT_PUBLIC_URL,
        app_redirect=(os.getenv("RELAY_REDIRECT_SCHEME") or "").strip() or DEFAULT_REDIRECT_SCHEME,
        state_ttl_seconds=_int_env("RELAY_STATE_TTL_SECONDS", DEFAULT_STATE_TTL_SECONDS),
        credentials=credentials,
    )
