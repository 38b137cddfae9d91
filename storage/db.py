# /storage/db.py
# Relational schema and async engine for everything ExplainGithub persists: conversations and their
# messages, linked provider tokens and repository view history. SQLite (aiosqlite) by default,
# any SQLAlchemy async URL (e.g. postgresql+asyncpg://...) in production.
from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from settings import settings

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands datetimes back naive
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("user_id", "provider", "owner", "repo", name="uq_conversation_repo"),)

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(320), nullable=False, index=True)
    provider = Column(String(32), nullable=False, default="github")
    owner = Column(String(255), nullable=False)
    repo = Column(String(255), nullable=False)
    title = Column(String(255))
    feedback = Column(String(16))
    feedback_timestamp = Column(DateTime(timezone=True))
    legacy_messages = Column(JSON)  # pre-normalisation JSON blob, migrated on read
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ChatMessageRow(Base):
    __tablename__ = "chat_messages"

    message_id = Column(String(64), primary_key=True)
    conversation_id = Column(String(36), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(String(16), nullable=False)
    content = Column(Text, nullable=False)
    timestamp = Column(BigInteger, nullable=False)  # epoch milliseconds
    selected_files = Column(JSON)


class ProviderTokenRow(Base):
    __tablename__ = "user_provider_tokens"
    __table_args__ = (UniqueConstraint("email", "provider", name="uq_token_email_provider"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), nullable=False, index=True)
    provider = Column(String(32), nullable=False, index=True)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_type = Column(String(32), default="Bearer")
    expires_at = Column(DateTime(timezone=True))
    username = Column(String(255))
    is_valid = Column(Boolean, default=True, nullable=False)
    last_validated_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class RepoViewRow(Base):
    __tablename__ = "repo_view_history"
    __table_args__ = (UniqueConstraint("email", "provider", "owner", "repo", name="uq_repo_view"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    owner = Column(String(255), nullable=False)
    repo = Column(String(255), nullable=False)
    viewed_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class Database:
    def __init__(self, url: str | None = None) -> None:
        self.url = url or settings.database_url
        self.engine = create_async_engine(self.url)
        self.sessionmaker: async_sessionmaker[AsyncSession] = async_sessionmaker(self.engine, expire_on_commit=False)

    async def init_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def aclose(self) -> None:
        await self.engine.dispose()
