# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import List, Optional

from sqlalchemy import delete, event, select
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ..types import Account, AccountStatus
from .db_models import Base, CloudAccountRow

lib_logger = logging.getLogger("file_cloud")

DEFAULT_BUSY_TIMEOUT_MS = 5000


def _is_sqlite_url(database_url: str) -> bool:
    return make_url(database_url).get_backend_name() == "sqlite"


def create_db_engine(
    database_url: str, busy_timeout_ms: float = DEFAULT_BUSY_TIMEOUT_MS
) -> AsyncEngine:
    """Create the async engine; sqlite gets WAL mode and a busy timeout."""
    if not _is_sqlite_url(database_url):
        return create_async_engine(database_url, future=True)

    busy_timeout_ms = max(1000, int(busy_timeout_ms))
    engine = create_async_engine(
        database_url, future=True, connect_args={"timeout": busy_timeout_ms / 1000}
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_connection, _connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
        cursor.close()

    return engine


def _row_to_account(row: CloudAccountRow) -> Account:
    return Account(
        id=row.id,
        provider_type=row.provider_type,
        external_id=row.external_id,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=row.expires_at,
        display_name=row.display_name or "",
        email=row.email or "",
        photo_url=row.photo_url,
        status=AccountStatus.from_value(row.status),
        last_error=row.last_error,
        created_at=row.created_at,
        updated_at=row.updated_at,
        metadata=dict(row.provider_metadata or {}),
    )


def _apply_account(row: CloudAccountRow, account: Account) -> None:
    row.provider_type = account.provider_type
    row.external_id = account.external_id
    row.access_token = account.access_token
    row.refresh_token = account.refresh_token
    row.expires_at = account.expires_at
    row.display_name = account.display_name
    row.email = account.email
    row.photo_url = account.photo_url
    row.status = account.status.value
    row.last_error = account.last_error
    row.created_at = account.created_at
    row.updated_at = account.updated_at
    row.provider_metadata = dict(account.metadata)


class SqlAccountStore:
    """Account store backed by a SQLAlchemy async engine."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        engine: Optional[AsyncEngine] = None,
    ):
        self._session_maker = session_maker
        self._engine = engine  # owned engine, disposed by aclose()

    @classmethod
    async def create(
        cls, database_url: str, busy_timeout_ms: float = DEFAULT_BUSY_TIMEOUT_MS
    ) -> "SqlAccountStore":
        engine = create_db_engine(database_url, busy_timeout_ms)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        safe_url = make_url(database_url).render_as_string(hide_password=True)
        lib_logger.debug(f"Account database ready at {safe_url}")
        return cls(async_sessionmaker(engine, expire_on_commit=False), engine=engine)

    async def get_account(self, provider_type: str, external_id: str) -> Optional[Account]:
        async with self._session_maker() as session:
            row = await session.scalar(
                select(CloudAccountRow).where(
                    CloudAccountRow.provider_type == provider_type,
                    CloudAccountRow.external_id == external_id,
                )
            )
            return _row_to_account(row) if row is not None else None

    async def get_account_by_id(self, account_id: str) -> Optional[Account]:
        async with self._session_maker() as session:
            row = await session.get(CloudAccountRow, account_id)
            return _row_to_account(row) if row is not None else None

    async def save_account(self, account: Account) -> None:
        async with self._session_maker() as session:
            row = await session.get(CloudAccountRow, account.id)
            if row is None:
                row = CloudAccountRow(id=account.id)
                session.add(row)
            _apply_account(row, account)
            await session.commit()

    async def delete_account(self, account_id: str) -> bool:
        async with self._session_maker() as session:
            result = await session.execute(
                delete(CloudAccountRow).where(CloudAccountRow.id == account_id)
            )
            await session.commit()
            return (result.rowcount or 0) > 0

    async def list_accounts(self) -> List[Account]:
        async with self._session_maker() as session:
            rows = (
                await session.scalars(
                    select(CloudAccountRow).order_by(CloudAccountRow.created_at)
                )
            ).all()
            return [_row_to_account(row) for row in rows]

    async def aclose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
