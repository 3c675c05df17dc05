# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Token exchange against the intermediary server.

The intermediary is the only party holding provider client secrets. This
module performs the two calls the app makes to it (token retrieval after a
handshake and refresh) and translates their HTTP detail into the error
taxonomy, so nothing above it ever looks at a status code.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import httpx

from .config import ProviderConfiguration
from .error_handler import AuthRejectedError, NetworkError, ProviderError
from .types import AuthResult

lib_logger = logging.getLogger("file_cloud")

# Error codes the intermediary passes through when the grant itself is dead
_GRANT_REJECTION_MARKERS = ("invalid_grant", "revoked", "token_revoked")


class TokenExchanger(ABC):
    """
    The token/refresh call shape, the one piece that varies per deployment.
    """

    @abstractmethod
    async def retrieve_tokens(self, config: ProviderConfiguration, state: str) -> AuthResult:
        """
        Fetches the tokens the intermediary obtained for a completed handshake.

        Returns:
            A successful AuthResult.

        Raises:
            NetworkError: on timeout, connection failure or 5xx.
            ProviderError: on any other rejection or a malformed body.
        """
        pass

    @abstractmethod
    async def refresh_tokens(
        self, config: ProviderConfiguration, refresh_token: str
    ) -> AuthResult:
        """
        Asks the intermediary to renew an access token.

        Raises:
            AuthRejectedError: when the grant is invalid or revoked.
            NetworkError: on timeout, connection failure or 5xx.
            ProviderError: on any other failure.
        """
        pass


def _parse_error_body(response: httpx.Response) -> Tuple[Optional[str], Optional[str]]:
    """Extract (error, error_description) from a JSON error body, if any."""
    try:
        data = response.json()
    except ValueError:
        return None, response.text[:500] or None
    if not isinstance(data, dict):
        return None, None

    error = data.get("error")
    description = data.get("error_description") or data.get("message")
    if isinstance(error, dict):
        description = description or error.get("message")
        error = error.get("code") or error.get("status")
    if isinstance(data.get("detail"), dict):
        error = error or data["detail"].get("error")
        description = description or data["detail"].get("error_description")
    return (str(error) if error else None), (str(description) if description else None)


def _is_grant_rejection(error: Optional[str], description: Optional[str]) -> bool:
    text = f"{error or ''} {description or ''}".lower()
    return any(marker in text for marker in _GRANT_REJECTION_MARKERS)


class IntermediaryTokenExchanger(TokenExchanger):
    """Talks to an intermediary exposing the ``/auth/tokens`` and refresh routes."""

    def __init__(self, http_client: httpx.AsyncClient, timeout: float = 30.0):
        self._client = http_client
        self._timeout = timeout

    async def retrieve_tokens(self, config: ProviderConfiguration, state: str) -> AuthResult:
        url = config.token_url_generator(state)
        lib_logger.debug(f"Retrieving tokens for {config.provider_key} from intermediary")

        try:
            response = await self._client.get(
                url, headers={"Accept": "application/json"}, timeout=self._timeout
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timed out retrieving tokens: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error retrieving tokens: {e}") from e

        if response.status_code != 200:
            error, description = _parse_error_body(response)
            detail = description or error or f"HTTP {response.status_code}"
            if response.status_code == 429 or response.status_code >= 500:
                raise NetworkError(f"Intermediary unavailable (HTTP {response.status_code})")
            if response.status_code == 404:
                raise ProviderError(
                    f"Intermediary does not know this handshake: {detail}",
                    status_code=404,
                    code=error or "invalid_state",
                )
            raise ProviderError(
                f"Token retrieval failed: {detail}",
                status_code=response.status_code,
                code=error or ("tokens_not_ready" if response.status_code == 400 else None),
            )

        return self._parse_success(response, "Token retrieval")

    async def refresh_tokens(
        self, config: ProviderConfiguration, refresh_token: str
    ) -> AuthResult:
        url = config.refresh_url_generator()

        try:
            response = await self._client.post(
                url,
                json={"refresh_token": refresh_token},
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Timed out refreshing token: {e}") from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error refreshing token: {e}") from e

        status_code = response.status_code
        if status_code != 200:
            error, description = _parse_error_body(response)
            detail = description or error or f"HTTP {status_code}"

            if _is_grant_rejection(error, description) or status_code in (401, 403):
                lib_logger.info(
                    f"Intermediary rejected refresh for {config.provider_key} (HTTP {status_code}: {error or detail})"
                )
                raise AuthRejectedError(f"Refresh rejected: {detail}")
            if status_code == 429 or status_code >= 500:
                raise NetworkError(f"Intermediary unavailable (HTTP {status_code})")
            raise ProviderError(
                f"Refresh failed: {detail}", status_code=status_code, code=error
            )

        return self._parse_success(response, "Refresh")

    @staticmethod
    def _parse_success(response: httpx.Response, what: str) -> AuthResult:
        try:
            data: Dict[str, Any] = response.json()
        except ValueError as e:
            raise ProviderError(f"{what} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{what} returned an unexpected body")

        # Some intermediaries answer 200 with an OAuth error payload
        if data.get("error"):
            error = str(data["error"])
            description = data.get("error_description")
            if _is_grant_rejection(error, description):
                raise AuthRejectedError(f"{what} rejected: {description or error}")
            raise ProviderError(f"{what} failed: {description or error}", code=error)

        result = AuthResult.from_token_response(data)
        if not result.success:
            raise ProviderError(f"{what} failed: {result.error}")
        return result
