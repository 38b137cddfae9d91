# /storage/chat_store.py
# ChatStore persists conversations (one per user + repository) and their messages. Writes retry a
# fixed number of times and report failure instead of raising, so a flaky database never breaks a
# chat. Conversations written by older deployments keep their messages in a JSON blob; those are
# moved into chat_messages the first time the conversation is read.
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from settings import settings
from storage.db import ChatMessageRow, Conversation, Database, now_ms, utcnow
from storage.models import ChatMessage, ConversationSummary
from utils.errors import bad_request, forbidden, not_found
from utils.text import make_title

logger = logging.getLogger(__name__)

FEEDBACK_VALUES = ("like", "dislike")


def normalize_legacy_blob(blob: Any) -> List[dict]:
    """Legacy blobs were arrays, index-keyed objects or JSON-encoded strings of either."""
    if blob is None:
        return []
    if isinstance(blob, str):
        try:
            blob = json.loads(blob)
        except json.JSONDecodeError:
            logger.warning("Discarding unparseable legacy message blob")
            return []
    if isinstance(blob, dict):
        numeric = [k for k in blob if str(k).isdigit()]
        if not numeric:
            return []
        blob = [blob[k] for k in sorted(numeric, key=lambda k: int(k))]
    if not isinstance(blob, list):
        return []
    return [m for m in blob if isinstance(m, dict)]


def legacy_timestamp(entry: dict) -> int:
    raw = entry.get("timestamp")
    if not raw:
        return now_ms()
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Legacy message %s has an unreadable timestamp %r; using the current time", entry.get("id"), raw)
        return now_ms()


def _to_message(row: ChatMessageRow) -> ChatMessage:
    return ChatMessage(
        id=row.message_id,
        role=row.role,
        content=row.content,
        timestamp=row.timestamp,
        selected_files=row.selected_files or [],
    )


def _to_summary(c: Conversation) -> ConversationSummary:
    return ConversationSummary(
        id=c.id,
        provider=c.provider,
        owner=c.owner,
        repo=c.repo,
        title=c.title,
        feedback=c.feedback,
        created_at=c.created_at,
        updated_at=c.updated_at,
    )


class ChatStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def init_schema(self) -> None:
        await self.db.init_schema()

    async def _find(self, session: AsyncSession, user_id: str, provider: str, owner: str, repo: str) -> Optional[Conversation]:
        res = await session.execute(
            select(Conversation).where(
                Conversation.user_id == user_id,
                Conversation.provider == provider,
                Conversation.owner == owner,
                Conversation.repo == repo,
            )
        )
        return res.scalars().first()

    async def _get_or_create(self, session: AsyncSession, user_id: str, provider: str, owner: str, repo: str) -> Conversation:
        conv = await self._find(session, user_id, provider, owner, repo)
        if conv is None:
            conv = Conversation(user_id=user_id, provider=provider, owner=owner, repo=repo, title=f"{owner}/{repo}")
            session.add(conv)
            await session.flush()
            logger.info("Created conversation %s for %s on %s/%s", conv.id, user_id, owner, repo)
        return conv

    async def get_or_create_conversation(self, user_id: str, provider: str, owner: str, repo: str) -> str:
        async with self.db.sessionmaker() as session:
            conv = await self._get_or_create(session, user_id, provider, owner, repo)
            await session.commit()
            return conv.id

    async def _save_once(self, message: ChatMessage, owner: str, repo: str, provider: str, user_id: str) -> None:
        async with self.db.sessionmaker() as session:
            conv = await self._get_or_create(session, user_id, provider, owner, repo)
            if await session.get(ChatMessageRow, message.id) is not None:
                logger.debug("Message %s already stored", message.id)
                await session.commit()
                return
            session.add(ChatMessageRow(
                message_id=message.id,
                conversation_id=conv.id,
                role=message.role,
                content=message.content,
                timestamp=message.timestamp,
                selected_files=message.selected_files or None,
            ))
            conv.updated_at = utcnow()
            if message.role == "user":
                conv.title = make_title(message.content, settings.title_max_chars)
            await session.commit()

    async def save_message(self, message: ChatMessage, owner: str, repo: str, provider: str, user_id: str) -> bool:
        retries = max(1, settings.db_save_retries)
        for attempt in range(1, retries + 1):
            try:
                await self._save_once(message, owner, repo, provider, user_id)
                return True
            except SQLAlchemyError:
                logger.exception("Error saving chat message %s (attempt %d/%d)", message.id, attempt, retries)
                if attempt < retries:
                    await asyncio.sleep(settings.db_retry_delay_s)
        logger.error("Max retries reached, message %s was not saved", message.id)
        return False

    async def migrate_legacy_messages(self, conversation_id: str) -> int:
        async with self.db.sessionmaker() as session:
            conv = await session.get(Conversation, conversation_id)
            if conv is None or conv.legacy_messages is None:
                return 0

            migrated = 0
            for entry in normalize_legacy_blob(conv.legacy_messages):
                role, content = entry.get("role"), entry.get("content")
                if role not in ("user", "assistant", "system") or not content:
                    continue
                message_id = str(entry.get("id") or uuid.uuid4())
                if await session.get(ChatMessageRow, message_id) is not None:
                    continue
                session.add(ChatMessageRow(
                    message_id=message_id,
                    conversation_id=conv.id,
                    role=role,
                    content=str(content),
                    timestamp=legacy_timestamp(entry),
                    selected_files=entry.get("selectedFiles") or entry.get("selected_files") or None,
                ))
                migrated += 1

            conv.legacy_messages = None
            await session.commit()
            if migrated:
                logger.info("Migrated %d legacy messages for conversation %s", migrated, conversation_id)
            return migrated

    async def get_messages(self, owner: str, repo: str, provider: str, user_id: str) -> List[ChatMessage]:
        async with self.db.sessionmaker() as session:
            conv = await self._find(session, user_id, provider, owner, repo)
            if conv is None:
                return []
            conv_id, needs_migration = conv.id, conv.legacy_messages is not None

        if needs_migration:
            await self.migrate_legacy_messages(conv_id)

        async with self.db.sessionmaker() as session:
            res = await session.execute(
                select(ChatMessageRow)
                .where(ChatMessageRow.conversation_id == conv_id)
                .order_by(ChatMessageRow.timestamp, ChatMessageRow.message_id)
            )
            return [_to_message(row) for row in res.scalars()]

    async def delete_message(self, message_id: str, user_id: str) -> bool:
        async with self.db.sessionmaker() as session:
            res = await session.execute(
                select(ChatMessageRow)
                .join(Conversation, Conversation.id == ChatMessageRow.conversation_id)
                .where(ChatMessageRow.message_id == message_id, Conversation.user_id == user_id)
            )
            row = res.scalars().first()
            if row is None:
                return False
            await session.delete(row)
            await session.commit()
            return True

    async def clear_history(self, owner: str, repo: str, provider: str, user_id: str) -> bool:
        async with self.db.sessionmaker() as session:
            conv = await self._find(session, user_id, provider, owner, repo)
            if conv is None:
                return True
            await session.execute(delete(ChatMessageRow).where(ChatMessageRow.conversation_id == conv.id))
            conv.legacy_messages = None
            conv.title = f"{owner}/{repo}"
            conv.updated_at = utcnow()
            await session.commit()
            return True

    async def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        async with self.db.sessionmaker() as session:
            res = await session.execute(
                select(Conversation).where(Conversation.user_id == user_id).order_by(Conversation.updated_at.desc())
            )
            return [_to_summary(c) for c in res.scalars()]

    async def _owned(self, session: AsyncSession, conversation_id: str, user_id: str) -> Conversation:
        conv = await session.get(Conversation, conversation_id)
        if conv is None:
            raise not_found("Conversation not found")
        if conv.user_id != user_id:
            raise forbidden("Access denied")
        return conv

    async def set_feedback(self, conversation_id: str, user_id: str, feedback: str) -> None:
        if feedback not in FEEDBACK_VALUES:
            raise bad_request('Invalid feedback value. Must be "like" or "dislike"')
        async with self.db.sessionmaker() as session:
            conv = await self._owned(session, conversation_id, user_id)
            conv.feedback = feedback
            conv.feedback_timestamp = utcnow()
            await session.commit()

    async def get_feedback(self, conversation_id: str, user_id: str) -> Optional[str]:
        async with self.db.sessionmaker() as session:
            conv = await self._owned(session, conversation_id, user_id)
            return conv.feedback
