# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Environment-driven settings for the account core.

Values are read from the process environment after ``load_dotenv()``, so a
``.env`` file next to the application works the same way as exported
variables. Malformed numbers are logged and replaced by their defaults.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from dotenv import load_dotenv

from .config import ProviderConfiguration
from .scopes import ProviderType

lib_logger = logging.getLogger("file_cloud")

DEFAULT_SERVER_URL = "http://localhost:8000"
DEFAULT_REDIRECT_SCHEME = "http://127.0.0.1:8765/auth/callback"
DEFAULT_REFRESH_BUFFER_SECONDS = 5 * 60  # refresh this far before expiry
DEFAULT_REFRESH_TIMEOUT_SECONDS = 15.0
DEFAULT_TOKEN_TIMEOUT_SECONDS = 30.0
DEFAULT_AUTH_TIMEOUT_SECONDS = 120.0
DEFAULT_PENDING_STATE_TTL_SECONDS = 600.0
DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 5000.0
DEFAULT_PROVIDERS = ("google_drive",)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        lib_logger.warning(f"Invalid {name} value: {raw}, using default {default}")
        return default
    if value <= 0:
        lib_logger.warning(f"{name} must be positive, got {raw}; using default {default}")
        return default
    return value


def _providers_env(name: str) -> Tuple[ProviderType, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return tuple(ProviderType(p) for p in DEFAULT_PROVIDERS)

    providers: List[ProviderType] = []
    for item in raw.split(","):
        item = item.strip().lower()
        if not item:
            continue
        try:
            provider = ProviderType(item)
        except ValueError:
            lib_logger.warning(f"Ignoring unknown provider '{item}' in {name}")
            continue
        if provider not in providers:
            providers.append(provider)
    return tuple(providers)


@dataclass(frozen=True)
class FileCloudSettings:
    server_url: str = DEFAULT_SERVER_URL
    redirect_scheme: str = DEFAULT_REDIRECT_SCHEME
    refresh_buffer_seconds: float = DEFAULT_REFRESH_BUFFER_SECONDS
    refresh_timeout_seconds: float = DEFAULT_REFRESH_TIMEOUT_SECONDS
    token_timeout_seconds: float = DEFAULT_TOKEN_TIMEOUT_SECONDS
    auth_timeout_seconds: float = DEFAULT_AUTH_TIMEOUT_SECONDS
    pending_state_ttl_seconds: float = DEFAULT_PENDING_STATE_TTL_SECONDS
    database_url: Optional[str] = None  # None keeps accounts in memory
    sqlite_busy_timeout_ms: float = DEFAULT_SQLITE_BUSY_TIMEOUT_MS
    providers: Tuple[ProviderType, ...] = field(
        default_factory=lambda: tuple(ProviderType(p) for p in DEFAULT_PROVIDERS)
    )

    def provider_configurations(self) -> List[ProviderConfiguration]:
        """Intermediary-backed configurations for every enabled provider."""
        return [
            ProviderConfiguration.for_intermediary(
                provider, self.server_url, self.redirect_scheme
            )
            for provider in self.providers
        ]


def get_settings(load_env: bool = True) -> FileCloudSettings:
    if load_env:
        load_dotenv()

    return FileCloudSettings(
        server_url=(os.getenv("FILE_CLOUD_SERVER_URL") or "").strip() or DEFAULT_SERVER_URL,
        redirect_scheme=(os.getenv("FILE_CLOUD_REDIRECT_SCHEME") or "").strip()
        or DEFAULT_REDIRECT_SCHEME,
        refresh_buffer_seconds=_float_env(
            "FILE_CLOUD_REFRESH_BUFFER_SECONDS", DEFAULT_REFRESH_BUFFER_SECONDS
        ),
        refresh_timeout_seconds=_float_env(
            "FILE_CLOUD_REFRESH_TIMEOUT_SECONDS", DEFAULT_REFRESH_TIMEOUT_SECONDS
        ),
        token_timeout_seconds=_float_env(
            "FILE_CLOUD_TOKEN_TIMEOUT_SECONDS", DEFAULT_TOKEN_TIMEOUT_SECONDS
        ),
        auth_timeout_seconds=_float_env(
            "FILE_CLOUD_AUTH_TIMEOUT_SECONDS", DEFAULT_AUTH_TIMEOUT_SECONDS
        ),
        pending_state_ttl_seconds=_float_env(
            "FILE_CLOUD_PENDING_STATE_TTL_SECONDS", DEFAULT_PENDING_STATE_TTL_SECONDS
        ),
        database_url=(os.getenv("FILE_CLOUD_DATABASE_URL") or "").strip() or None,
        sqlite_busy_timeout_ms=_float_env(
            "FILE_CLOUD_SQLITE_BUSY_TIMEOUT_MS", DEFAULT_SQLITE_BUSY_TIMEOUT_MS
        ),
        providers=_providers_env("FILE_CLOUD_PROVIDERS"),
    )
