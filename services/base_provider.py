# /services/base_provider.py
# This module defines the provider-neutral pieces of repository browsing: the FileItem/TreeNode types,
# the BaseProvider interface implemented by the GitHub and GitLab clients, the shared file-content
# cache, tree building and the retry helper used for flaky tree fetches.
from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, Optional, TypeVar

import httpx
from cachetools import TTLCache

from settings import settings
from utils.errors import AppError, not_implemented, upstream_error

logger = logging.getLogger(__name__)

ProviderType = Literal["github", "gitlab", "azure", "bitbucket"]
PROVIDER_TYPES = ("github", "gitlab", "azure", "bitbucket")

T = TypeVar("T")


@dataclass
class FileItem:
    name: str
    path: str
    type: Literal["dir", "file"]
    sha: str = ""
    size: int = 0
    url: str = ""


@dataclass
class TreeNode:
    name: str
    path: str
    type: Literal["dir", "file"]
    sha: str = ""
    level: int = 0
    size: int = 0
    children: List["TreeNode"] = field(default_factory=list)


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str = "bearer"


def _sort_key(item) -> tuple:
    # directories first, then case-insensitive name
    return (0 if item.type == "dir" else 1, item.name.casefold(), item.name)


def sort_items(items: Iterable[FileItem]) -> List[FileItem]:
    return sorted(items, key=_sort_key)


def build_tree(flat: Iterable[Dict[str, Any]]) -> List[TreeNode]:
    """
    Turn a flat recursive listing ({"path", "type": "dir"|"file", "sha", "size"}) into a hierarchy.
    Parent directories missing from the listing are synthesised so every node is reachable.
    """
    nodes: Dict[str, TreeNode] = {}
    roots: List[TreeNode] = []

    def ensure_dir(path: str) -> TreeNode:
        node = nodes.get(path)
        if node is not None:
            return node
        parts = path.split("/")
        node = TreeNode(name=parts[-1], path=path, type="dir", level=len(parts) - 1)
        attach(node)
        return node

    def attach(node: TreeNode) -> None:
        nodes[node.path] = node
        if "/" in node.path:
            parent = ensure_dir(node.path.rsplit("/", 1)[0])
            parent.children.append(node)
        else:
            roots.append(node)

    for item in flat:
        path = (item.get("path") or "").strip("/")
        if not path:
            continue
        existing = nodes.get(path)
        if existing is not None:
            # a synthesised directory seen later in the listing: just fill in its details
            existing.sha = item.get("sha") or existing.sha
            continue
        parts = path.split("/")
        attach(TreeNode(
            name=parts[-1],
            path=path,
            type="file" if item.get("type") == "file" else "dir",
            sha=item.get("sha") or "",
            level=len(parts) - 1,
            size=item.get("size") or 0,
        ))

    def sort_nodes(level: List[TreeNode]) -> None:
        level.sort(key=_sort_key)
        for node in level:
            if node.children:
                sort_nodes(node.children)

    sort_nodes(roots)
    return roots


class FileCache:
    """Decoded file contents keyed provider:owner:repo:path:branch, expiring after file_cache_ttl_s."""

    def __init__(self, ttl_s: int | None = None, maxsize: int | None = None) -> None:
        self._cache: TTLCache = TTLCache(
            maxsize=maxsize or settings.file_cache_size,
            ttl=ttl_s if ttl_s is not None else settings.file_cache_ttl_s,
        )

    @staticmethod
    def key(provider: str, owner: str, repo: str, path: str, branch: str | None = None) -> str:
        return f"{provider}:{owner}:{repo}:{path}:{branch or 'default'}"

    def get(self, key: str) -> Optional[str]:
        return self._cache.get(key)

    def put(self, key: str, content: str) -> None:
        self._cache[key] = content

    def clear(self) -> None:
        self._cache.clear()


async def with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    what: str,
    attempts: int | None = None,
    delay_s: float | None = None,
) -> T:
    """Run fn with linear backoff (attempt * delay). Client errors are final and raised at once."""
    attempts = max(1, attempts or settings.fetch_retries)
    delay_s = settings.fetch_retry_delay_s if delay_s is None else delay_s
    last: AppError = upstream_error(f"{what} failed")

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except AppError as e:
            if e.status_code < 500 or e.status_code == 501:
                raise
            last = e
        except httpx.HTTPError as e:
            last = upstream_error(f"{what} failed: {e}")

        if attempt < attempts:
            logger.warning("%s attempt %d/%d failed (%s); retrying in %.1fs", what, attempt, attempts, last.message, attempt * delay_s)
            await asyncio.sleep(attempt * delay_s)

    raise last


class BaseProvider(abc.ABC):
    name: str
    display_name: str
    implemented: bool = True

    def __init__(self, cache: FileCache | None = None) -> None:
        self.cache = cache or FileCache()

    # Repository methods
    @abc.abstractmethod
    async def get_contents(self, owner: str, repo: str, path: str = "", token: str | None = None) -> List[FileItem]: ...

    @abc.abstractmethod
    async def get_tree(self, owner: str, repo: str, token: str | None = None) -> List[TreeNode]: ...

    @abc.abstractmethod
    async def get_file_content(self, owner: str, repo: str, path: str, branch: str | None = None, token: str | None = None) -> str: ...

    @abc.abstractmethod
    async def get_default_branch(self, owner: str, repo: str, token: str | None = None) -> str: ...

    # Authentication methods
    @abc.abstractmethod
    async def get_user(self, token: str) -> Dict[str, Any]: ...

    @abc.abstractmethod
    def authorize_url(self, state: str, redirect_uri: str) -> str: ...

    @abc.abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens: ...

    @abc.abstractmethod
    async def refresh_access_token(self, refresh_token: str, redirect_uri: str) -> OAuthTokens: ...

    @staticmethod
    def username_of(user: Dict[str, Any]) -> str | None:
        return user.get("login") or user.get("username")

    async def aclose(self) -> None:
        return None


class PlaceholderProvider(BaseProvider):
    """Stand-in for providers listed in the UI but not wired up yet."""

    implemented = False

    def __init__(self, name: str) -> None:
        super().__init__()
        self.name = name
        self.display_name = name.capitalize()

    def _fail(self) -> AppError:
        return not_implemented(f"{self.name} provider integration is not yet fully implemented")

    async def get_contents(self, owner, repo, path="", token=None):
        raise self._fail()

    async def get_tree(self, owner, repo, token=None):
        raise self._fail()

    async def get_file_content(self, owner, repo, path, branch=None, token=None):
        raise self._fail()

    async def get_default_branch(self, owner, repo, token=None):
        raise self._fail()

    async def get_user(self, token):
        raise self._fail()

    def authorize_url(self, state, redirect_uri):
        raise self._fail()

    async def exchange_code(self, code, redirect_uri):
        raise self._fail()

    async def refresh_access_token(self, refresh_token, redirect_uri):
        raise self._fail()
