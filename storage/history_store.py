# /storage/history_store.py
# Per-user "recently viewed repositories". Anonymous visitors are not tracked.
import logging
from typing import List

from sqlalchemy import select

from storage.db import Database, RepoViewRow, utcnow
from storage.models import RepoHistoryItem

logger = logging.getLogger(__name__)


class HistoryStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def add(self, email: str | None, provider: str, owner: str, repo: str) -> None:
        if not email:
            return
        async with self.db.sessionmaker() as session:
            res = await session.execute(
                select(RepoViewRow).where(
                    RepoViewRow.email == email,
                    RepoViewRow.provider == provider,
                    RepoViewRow.owner == owner,
                    RepoViewRow.repo == repo,
                )
            )
            row = res.scalars().first()
            if row is None:
                session.add(RepoViewRow(email=email, provider=provider, owner=owner, repo=repo, viewed_at=utcnow()))
            else:
                row.viewed_at = utcnow()
            await session.commit()

    async def list(self, email: str | None, limit: int = 50) -> List[RepoHistoryItem]:
        if not email:
            return []
        async with self.db.sessionmaker() as session:
            res = await session.execute(
                select(RepoViewRow)
                .where(RepoViewRow.email == email)
                .order_by(RepoViewRow.viewed_at.desc(), RepoViewRow.id.desc())
                .limit(limit)
            )
            return [
                RepoHistoryItem(id=r.id, provider=r.provider, owner=r.owner, repo=r.repo, viewed_at=r.viewed_at)
                for r in res.scalars()
            ]
