# /services/chat_service.py
# This module defines the ChatService class, which answers questions about a repository. It
# normalises the two request shapes the browser client sends, builds a bounded prompt from the
# repository structure, README and user-selected files, streams the LLM answer as SSE frames and
# persists both sides of the exchange.
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Tuple

import httpx

from api.schemas import ChatRequest
from settings import settings
from services.identity import Identity
from services.llm_client import LLMClient
from storage.chat_store import ChatStore
from storage.db import now_ms
from storage.models import ChatMessage
from utils.errors import AppError, bad_request, upstream_error
from utils.sse import DONE_FRAME, collect_sse_text, format_sse
from utils.text import has_usable_context, truncate

logger = logging.getLogger(__name__)

UNKNOWN_REPO = ("unknown", "repo")
QUESTION_MARKER = "User question: "

FALLBACK_TEMPLATE = """I couldn't connect to the repository analysis service. Please try again later.

Error details: {error}

You can try:
1. Refreshing the page and trying again
2. Checking if the repository exists and is accessible
3. Asking a simpler question about the repository"""


@dataclass
class RepoRef:
    owner: str
    repo: str
    provider: str = "github"

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def known(self) -> bool:
        return (self.owner, self.repo) != UNKNOWN_REPO


@dataclass
class RepoContext:
    structure: str = ""
    readme: str = ""
    tagged_files: Dict[str, str] = field(default_factory=dict)


def render_structure(structure: Any) -> str:
    """The client sends either a pre-rendered text tree or the raw node list."""
    if not structure:
        return ""
    if isinstance(structure, str):
        return structure
    if isinstance(structure, list):
        lines: List[str] = []

        def walk(nodes: List[Any], depth: int) -> None:
            for node in nodes:
                if not isinstance(node, dict):
                    continue
                name = node.get("name") or node.get("path") or ""
                suffix = "/" if node.get("type") == "dir" else ""
                lines.append(f"{'  ' * depth}{name}{suffix}")
                walk(node.get("children") or [], depth + 1)

        walk(structure, 0)
        return "\n".join(lines)
    return json.dumps(structure, ensure_ascii=False)


def files_footer(paths: List[str]) -> str:
    if not paths:
        return ""
    return f"\n\n---\n**Files analyzed:** {', '.join(paths)}"


class ChatService:
    def __init__(self, llm: LLMClient, store: ChatStore | None = None, providers=None, tokens=None) -> None:
        self.llm = llm
        self.store = store
        self.providers = providers  # ProviderRegistry, used to load selected files sent without content
        self.tokens = tokens        # TokenService

    # --- request normalisation ---------------------------------------------------------------

    def normalize(self, req: ChatRequest) -> Tuple[str, RepoRef, RepoContext]:
        if req.prompt:
            query = req.prompt.split(QUESTION_MARKER, 1)[1] if QUESTION_MARKER in req.prompt else req.prompt
        else:
            query = req.message or ""
        query = query.strip()
        if not query:
            raise bad_request("A message or prompt is required")

        if req.owner and req.repo:
            ref = RepoRef(req.owner, req.repo, req.provider)
        elif req.repo_path and len(req.repo_path.strip("/").split("/")) >= 2:
            owner, repo = req.repo_path.strip("/").split("/")[:2]
            ref = RepoRef(owner, repo, req.provider)
        else:
            ref = RepoRef(*UNKNOWN_REPO, provider=req.provider)
        if self.providers is not None:
            self.providers.get(ref.provider)

        if req.repo_context is not None:
            ctx = RepoContext(
                structure=render_structure(req.repo_context.structure),
                readme=req.repo_context.readme or "",
                tagged_files=dict(req.repo_context.tagged_files),
            )
        elif req.repo_structure is not None:
            ctx = RepoContext(
                structure=render_structure(req.repo_structure),
                readme=req.readme_content or "",
                tagged_files=dict(req.tagged_files or {}),
            )
        else:
            ctx = RepoContext(tagged_files=dict(req.tagged_files or {}))
        return query, ref, ctx

    async def fill_tagged_files(self, ref: RepoRef, ctx: RepoContext, identity: Identity) -> None:
        missing = [p for p, content in ctx.tagged_files.items() if not content]
        if not missing or not ref.known or self.providers is None:
            return
        provider = self.providers.get(ref.provider)
        if not provider.implemented:
            return
        token = await self.tokens.get_token(identity.email, ref.provider) if self.tokens else None
        for path in missing:
            try:
                ctx.tagged_files[path] = await provider.get_file_content(ref.owner, ref.repo, path, token=token)
            except AppError as e:
                logger.warning("Could not load selected file %s from %s: %s", path, ref.full_name, e.message)
            except httpx.HTTPError as e:
                logger.warning("Could not load selected file %s from %s: %s", path, ref.full_name, e)

    # --- prompt ------------------------------------------------------------------------------

    def build_messages(
        self,
        query: str,
        ref: RepoRef,
        ctx: RepoContext,
        history: List[ChatMessage] | None = None,
    ) -> List[Dict[str, str]]:
        budget = settings.max_context_chars
        sections: List[str] = []

        if has_usable_context(ctx.structure):
            block = truncate(ctx.structure, min(settings.max_structure_chars, budget))
            sections.append(f"## Repository structure\n{block}")
            budget -= len(block)

        if has_usable_context(ctx.readme) and budget > 0:
            block = truncate(ctx.readme, min(settings.max_readme_chars, budget))
            sections.append(f"## README\n{block}")
            budget -= len(block)

        for path, content in ctx.tagged_files.items():
            if not content:
                continue
            if budget <= 0:
                logger.info("Context budget exhausted; skipping selected file %s", path)
                continue
            block = truncate(content, min(settings.max_tagged_file_chars, budget))
            sections.append(f"## File: {path}\n```\n{block}\n```")
            budget -= len(block)

        system = (
            f"You are ExplainGithub, an assistant that explains the code of the {ref.provider} repository "
            f"{ref.full_name if ref.known else '(unknown repository)'}.\n"
            "Answer using the repository context below. If the answer is not in the context, say so briefly "
            "instead of guessing. Use markdown and reference file paths when pointing at code.\n"
        )
        if sections:
            system += "\n# Repository context\n\n" + "\n\n".join(sections)

        messages: List[Dict[str, str]] = [{"role": "system", "content": system}]
        turns = [m for m in (history or []) if m.role in ("user", "assistant")]
        recent = turns[-settings.max_history_turns:] if settings.max_history_turns else []
        for m in recent:
            messages.append({"role": m.role, "content": m.content})

        user_content = query
        if ctx.tagged_files:
            user_content += f"\n\nNote: I've selected these specific files for analysis: {', '.join(ctx.tagged_files)}"
        messages.append({"role": "user", "content": user_content})
        return messages

    # --- persistence -------------------------------------------------------------------------

    async def _history(self, ref: RepoRef, identity: Identity) -> List[ChatMessage]:
        if self.store is None or not ref.known:
            return []
        try:
            return await self.store.get_messages(ref.owner, ref.repo, ref.provider, identity.user_id)
        except Exception:
            logger.exception("Could not load chat history for %s", ref.full_name)
            return []

    async def _persist(
        self, role: str, content: str, ref: RepoRef, identity: Identity, selected: List[str], not_before: int = 0
    ) -> int:
        timestamp = max(now_ms(), not_before)
        if self.store is None or not ref.known or not content:
            return timestamp
        message = ChatMessage(
            id=uuid.uuid4().hex,
            role=role,
            content=content,
            timestamp=timestamp,
            selected_files=selected,
        )
        saved = await self.store.save_message(message, ref.owner, ref.repo, ref.provider, identity.user_id)
        if not saved:
            logger.warning("%s message for %s was not persisted", role.capitalize(), ref.full_name)
        return timestamp

    def _log_request(self, query: str, ref: RepoRef, ctx: RepoContext, identity: Identity) -> None:
        logger.info(
            "Chat question from %s about %s/%s: %r (structure=%d, readme=%d, files=%d)",
            identity.user_id, ref.provider, ref.full_name, query[:200],
            len(ctx.structure), len(ctx.readme), len(ctx.tagged_files),
        )

    # --- answering ---------------------------------------------------------------------------

    async def _chunked(self, text: str) -> AsyncIterator[str]:
        size = max(1, settings.stream_chunk_chars)
        for i in range(0, len(text), size):
            if i:
                await asyncio.sleep(settings.stream_chunk_delay_s)
            yield format_sse(text[i:i + size])

    async def stream_chat(self, req: ChatRequest, identity: Identity) -> AsyncIterator[str]:
        query, ref, ctx = self.normalize(req)
        self._log_request(query, ref, ctx, identity)
        await self.fill_tagged_files(ref, ctx, identity)
        selected = list(ctx.tagged_files)

        history = await self._history(ref, identity)
        asked_at = await self._persist("user", query, ref, identity, selected)
        messages = self.build_messages(query, ref, ctx, history)

        parts: List[str] = []
        failed = False
        try:
            if not self.llm.enabled:
                raise upstream_error("LLM_API_KEY is not set; LLM call is disabled")
            async for delta in self.llm.stream_chat(messages):
                parts.append(delta)
                yield format_sse(delta)
        except AppError as e:
            failed = True
            logger.warning("LLM error for %s (streaming fallback message): %s", ref.full_name, e.message)
            async for frame in self._chunked(FALLBACK_TEMPLATE.format(error=e.message)):
                yield frame

        footer = files_footer(selected) if parts and not failed else ""
        if footer:
            yield format_sse(footer)
        # stored before [DONE]; readers may stop reading there
        if parts and not failed:
            await self._persist("assistant", "".join(parts) + footer, ref, identity, selected, not_before=asked_at + 1)
        yield DONE_FRAME

    async def complete_chat(self, req: ChatRequest, identity: Identity) -> Dict[str, str]:
        query, ref, ctx = self.normalize(req)
        self._log_request(query, ref, ctx, identity)
        await self.fill_tagged_files(ref, ctx, identity)
        selected = list(ctx.tagged_files)

        history = await self._history(ref, identity)
        asked_at = await self._persist("user", query, ref, identity, selected)
        try:
            answer = await self.llm.chat(self.build_messages(query, ref, ctx, history))
        except AppError as e:
            raise upstream_error(f"Failed to get response from repository analysis service: {e.message}") from e

        answer += files_footer(selected)
        await self._persist("assistant", answer, ref, identity, selected, not_before=asked_at + 1)
        return {"message": answer}

    async def collect(self, req: ChatRequest, identity: Identity) -> str:
        """Run the streaming path to completion and return the decoded answer text."""
        return await collect_sse_text(self.stream_chat(req, identity))
