import logging
import sys
import time
from pathlib import Path
from typing import Callable

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from file_cloud.capabilities import ProviderCapabilities
from file_cloud.config import ProviderConfiguration
from file_cloud.exchange import IntermediaryTokenExchanger
from file_cloud.persistence.db_models import Base
from file_cloud.registry import AccountRegistry
from file_cloud.scopes import ProviderType
from file_cloud.types import Account

SERVER_URL = "https://relay.test"
REDIRECT_SCHEME = "http://127.0.0.1:8765/auth/callback"


@pytest.fixture(autouse=True)
def _failure_log_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import file_cloud.failure_logger as failure_logger

    monkeypatch.setenv("FILE_CLOUD_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(failure_logger, "_failure_logger", None)
    yield
    logger = logging.getLogger("file_cloud.failures")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest_asyncio.fixture
async def session_maker() -> async_sessionmaker:
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    maker = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield maker
    finally:
        await engine.dispose()


@pytest.fixture
def drive_config() -> ProviderConfiguration:
    return ProviderConfiguration.for_intermediary(
        ProviderType.GOOGLE_DRIVE,
        SERVER_URL,
        REDIRECT_SCHEME,
        capabilities=ProviderCapabilities(can_delete=True, can_permanent_delete=False),
    )


@pytest.fixture
def registry() -> AccountRegistry:
    return AccountRegistry()


@pytest.fixture
def make_account() -> Callable[..., Account]:
    def factory(**overrides) -> Account:
        values = {
            "provider_type": "google_drive",
            "external_id": "user-1",
            "access_token": "a1",
            "refresh_token": "r1",
            "expires_at": time.time() + 3600,
            "display_name": "Alice",
            "email": "alice@example.com",
        }
        values.update(overrides)
        return Account(**values)

    return factory


class RelayStub:
    """Scriptable fake of the intermediary, mounted through httpx.MockTransport."""

    def __init__(self):
        self.calls: list[httpx.Request] = []
        self.refresh_responses: list[httpx.Response | Exception] = []
        self.token_responses: dict[str, httpx.Response] = {}

    def refresh_calls(self) -> list[httpx.Request]:
        return [r for r in self.calls if r.url.path.endswith("/refresh")]

    def token_calls(self) -> list[httpx.Request]:
        return [r for r in self.calls if r.url.path.startswith("/auth/tokens/")]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if request.url.path.endswith("/refresh"):
            if not self.refresh_responses:
                return httpx.Response(500, json={"error": "unexpected_refresh"})
            outcome = self.refresh_responses.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if request.url.path.startswith("/auth/tokens/"):
            state = request.url.path.rsplit("/", 1)[-1]
            response = self.token_responses.pop(state, None)
            if response is None:
                return httpx.Response(404, json={"error": "invalid_state"})
            return response
        return httpx.Response(404)


@pytest.fixture
def relay() -> RelayStub:
    return RelayStub()


@pytest_asyncio.fixture
async def http_client(relay: RelayStub) -> httpx.AsyncClient:
    client = httpx.AsyncClient(transport=httpx.MockTransport(relay.handler))
    try:
        yield client
    finally:
        await client.aclose()


@pytest.fixture
def exchanger(http_client: httpx.AsyncClient) -> IntermediaryTokenExchanger:
    return IntermediaryTokenExchanger(http_client, timeout=5.0)
