import time
from dataclasses import dataclass
from typing import Any


class TokensNotReady(Exception):
    pass


@dataclass
class RelayState:
    provider: str
    created_at: float
    expires_at: float
    tokens: dict[str, Any] | None = None
    error: str | None = None

    def is_expired(self, now: float | None = None) -> bool:
        return (now if now is not None else time.time()) > self.expires_at


class RelayStateStore:
    """
    Pending handshakes keyed by the app's state value.

    Tokens are handed out exactly once; retrieving them removes the state.
    """

    def __init__(self, ttl_seconds: int):
        self._ttl = ttl_seconds
        self._states: dict[str, RelayState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def prune(self) -> None:
        now = time.time()
        for state in [s for s, v in self._states.items() if v.is_expired(now)]:
            del self._states[state]

    def begin(self, state: str, provider: str) -> RelayState:
        self.prune()
        now = time.time()
        entry = RelayState(provider=provider, created_at=now, expires_at=now + self._ttl)
        self._states[state] = entry
        return entry

    def get(self, state: str) -> RelayState | None:
        entry = self._states.get(state)
        if entry is None:
            return None
        if entry.is_expired():
            del self._states[state]
            return None
        return entry

    def complete(self, state: str, tokens: dict[str, Any]) -> None:
        entry = self.get(state)
        if entry is not None:
            entry.tokens = tokens

    def fail(self, state: str, error: str) -> None:
        entry = self.get(state)
        if entry is not None:
            entry.error = error

    def take_tokens(self, state: str) -> dict[str, Any] | None:
        """
        Return the tokens for ``state`` and forget it.

        Returns None for an unknown or expired state and raises TokensNotReady
        while the exchange has not finished.
        """
        entry = self.get(state)
        if entry is None:
            return None
        if entry.error is not None:
            del self._states[state]
            raise TokensNotReady(entry.error)
        if entry.tokens is None:
            raise TokensNotReady("tokens_not_ready")
        del self._states[state]
        return entry.tokens
