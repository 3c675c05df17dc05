# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Provider configuration records.

A configuration is declared once per provider instance and never mutated.
It only knows how to reach the intermediary server; client secrets live on
that server and never appear here.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional
from urllib.parse import quote, urlparse

from .capabilities import ProviderCapabilities
from .scopes import (
    DEFAULT_REQUIRED_SCOPES,
    OAuthScope,
    ProviderType,
    map_scopes_to_provider,
    validate_scopes,
)

UrlForState = Callable[[str], str]
UrlFactory = Callable[[], str]


@dataclass(frozen=True)
class ProviderConfiguration:
    """Immutable description of one configured cloud provider instance."""

    type: ProviderType
    display_name: str
    auth_url_generator: UrlForState = field(repr=False)
    token_url_generator: UrlForState = field(repr=False)
    refresh_url_generator: UrlFactory = field(repr=False)
    redirect_scheme: str
    required_scopes: FrozenSet[OAuthScope] = DEFAULT_REQUIRED_SCOPES
    capabilities: ProviderCapabilities = field(default_factory=ProviderCapabilities)
    configuration_id: Optional[str] = None  # distinguishes several instances of one type

    @property
    def provider_key(self) -> str:
        """The value stored as ``Account.provider_type`` for this configuration."""
        return self.configuration_id or self.type.value

    @property
    def provider_scopes(self) -> List[str]:
        return map_scopes_to_provider(self.required_scopes, self.type)

    @classmethod
    def for_intermediary(
        cls,
        provider_type: ProviderType,
        server_url: str,
        redirect_scheme: str,
        display_name: Optional[str] = None,
        required_scopes: Optional[Iterable[OAuthScope]] = None,
        capabilities: Optional[ProviderCapabilities] = None,
        configuration_id: Optional[str] = None,
    ) -> "ProviderConfiguration":
        """
        Build a configuration whose URLs all point at the intermediary.

        The intermediary exposes ``/auth/<provider>?state=`` to start the
        consent redirect, ``/auth/tokens/<state>`` to hand over the exchanged
        tokens and ``/auth/<provider>/refresh`` to renew them.
        """
        base = server_url.rstrip("/")
        provider = provider_type.value

        def auth_url(state: str) -> str:
            return f"{base}/auth/{provider}?state={quote(state, safe='')}"

        def token_url(state: str) -> str:
            return f"{base}/auth/tokens/{quote(state, safe='')}"

        def refresh_url() -> str:
            return f"{base}/auth/{provider}/refresh"

        return cls(
            type=provider_type,
            display_name=display_name or _DEFAULT_DISPLAY_NAMES.get(provider_type, provider),
            auth_url_generator=auth_url,
            token_url_generator=token_url,
            refresh_url_generator=refresh_url,
            redirect_scheme=redirect_scheme,
            required_scopes=frozenset(required_scopes)
            if required_scopes is not None
            else DEFAULT_REQUIRED_SCOPES,
            capabilities=capabilities or ProviderCapabilities(),
            configuration_id=configuration_id,
        )

    def validate(self) -> None:
        """Raise ValueError describing every problem with this configuration."""
        problems: List[str] = []

        if not self.display_name.strip():
            problems.append("display name is empty")
        if "://" not in self.redirect_scheme:
            problems.append(f"redirect scheme '{self.redirect_scheme}' is not a URI")
        if not self.required_scopes:
            problems.append("no required scopes declared")
        else:
            try:
                validate_scopes(self.required_scopes, self.type)
            except ValueError as e:
                problems.append(str(e))

        probe_state = "validation-state"
        for name, url in (
            ("auth", self.auth_url_generator(probe_state)),
            ("token", self.token_url_generator(probe_state)),
            ("refresh", self.refresh_url_generator()),
        ):
            if not _is_absolute_url(url):
                problems.append(f"{name} URL '{url}' is not absolute")

        if self.capabilities.max_page_size <= 0:
            problems.append("max page size must be positive")

        if problems:
            raise ValueError(
                f"Invalid configuration for '{self.provider_key}': " + "; ".join(problems)
            )


_DEFAULT_DISPLAY_NAMES: Dict[ProviderType, str] = {
    ProviderType.GOOGLE_DRIVE: "Google Drive",
    ProviderType.ONE_DRIVE: "OneDrive",
    ProviderType.DROPBOX: "Dropbox",
    ProviderType.CUSTOM: "Custom Provider",
    ProviderType.LOCAL_SERVER: "Local Server",
}


def _is_absolute_url(url: str) -> bool:
    parsed = urlparse(url)
    return bool(parsed.scheme) and bool(parsed.netloc)


def index_configurations(
    configs: Iterable[ProviderConfiguration],
) -> Dict[str, ProviderConfiguration]:
    """Key configurations by provider key, rejecting duplicates."""
    indexed: Dict[str, ProviderConfiguration] = {}
    for config in configs:
        if config.provider_key in indexed:
            raise ValueError(f"Duplicate provider configuration '{config.provider_key}'")
        indexed[config.provider_key] = config
    return indexed
