# /storage/token_store.py
# Persistent tier of the provider-token cache: one row per (email, provider).
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import delete, select, update

from storage.db import Database, ProviderTokenRow, as_utc, utcnow


@dataclass
class StoredToken:
    email: str
    provider: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    username: str | None = None
    is_valid: bool = True
    last_validated_at: datetime | None = None


def _from_row(row: ProviderTokenRow) -> StoredToken:
    return StoredToken(
        email=row.email,
        provider=row.provider,
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        expires_at=as_utc(row.expires_at),
        username=row.username,
        is_valid=bool(row.is_valid),
        last_validated_at=as_utc(row.last_validated_at),
    )


class TokenStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def get(self, email: str, provider: str) -> Optional[StoredToken]:
        async with self.db.sessionmaker() as session:
            res = await session.execute(
                select(ProviderTokenRow).where(ProviderTokenRow.email == email, ProviderTokenRow.provider == provider)
            )
            row = res.scalars().first()
            return _from_row(row) if row else None

    async def list(self, email: str) -> List[StoredToken]:
        async with self.db.sessionmaker() as session:
            res = await session.execute(select(ProviderTokenRow).where(ProviderTokenRow.email == email))
            return [_from_row(r) for r in res.scalars()]

    async def upsert(self, token: StoredToken) -> None:
        now = utcnow()
        async with self.db.sessionmaker() as session:
            res = await session.execute(
                select(ProviderTokenRow).where(
                    ProviderTokenRow.email == token.email, ProviderTokenRow.provider == token.provider
                )
            )
            row = res.scalars().first()
            if row is None:
                row = ProviderTokenRow(email=token.email, provider=token.provider, created_at=now)
                session.add(row)
            row.access_token = token.access_token
            row.refresh_token = token.refresh_token
            row.expires_at = token.expires_at
            row.username = token.username
            row.is_valid = token.is_valid
            row.last_validated_at = token.last_validated_at
            row.updated_at = now
            await session.commit()

    async def mark(self, email: str, provider: str, is_valid: bool) -> None:
        async with self.db.sessionmaker() as session:
            await session.execute(
                update(ProviderTokenRow)
                .where(ProviderTokenRow.email == email, ProviderTokenRow.provider == provider)
                .values(is_valid=is_valid, last_validated_at=utcnow())
            )
            await session.commit()

    async def delete(self, email: str, provider: str) -> bool:
        async with self.db.sessionmaker() as session:
            res = await session.execute(
                delete(ProviderTokenRow).where(ProviderTokenRow.email == email, ProviderTokenRow.provider == provider)
            )
            await session.commit()
            return bool(res.rowcount)
