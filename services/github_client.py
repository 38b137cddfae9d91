# /services/github_client.py
# This module defines a GitHubProvider class that provides methods for interacting with the GitHub API:
# directory listings, the recursive repository tree, file contents and the OAuth web flow.
import logging
import math
import re
import time
from typing import Any, Dict, List, Tuple
from urllib.parse import urlencode

import httpx

from settings import settings
from services.base_provider import (
    BaseProvider,
    FileCache,
    FileItem,
    OAuthTokens,
    TreeNode,
    build_tree,
    sort_items,
    with_retries,
)
from utils.errors import bad_request, forbidden, not_found, rate_limited, unauthorized, upstream_error
from utils.text import has_binary_extension, is_probably_binary_bytes, safe_b64decode

logger = logging.getLogger(__name__)


GITHUB_REPO_RE = re.compile(
    r"^https?://github\.com/(?P<owner>[^/]+)/(?P<repo>[^/#?]+)"
)


class GitHubProvider(BaseProvider):
    name = "github"
    display_name = "GitHub"

    def __init__(self, cache: FileCache | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(cache)
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "explaingithub/0.1",
        }
        self._client = httpx.AsyncClient(
            base_url=settings.github_api_base,
            headers=headers,
            timeout=httpx.Timeout(settings.http_timeout_s),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def parse_repo_url(url: str) -> Tuple[str, str]:
        m = GITHUB_REPO_RE.match(url)
        if not m:
            raise bad_request("URL must look like https://github.com/OWNER/REPO")
        owner = m.group("owner")
        repo = m.group("repo")
        if repo.endswith(".git"):
            repo = repo[:-4]
        return owner, repo

    @staticmethod
    def _auth(token: str | None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _check(self, r: httpx.Response, missing: str) -> None:
        if r.status_code < 400:
            return
        if r.status_code == 404:
            raise not_found(missing)
        if r.status_code == 401:
            raise unauthorized("GitHub authentication failed. Try logging in again.")
        if r.status_code in (403, 429):
            reset = r.headers.get("x-ratelimit-reset")
            if reset and r.headers.get("x-ratelimit-remaining", "0") == "0":
                minutes = max(0, math.ceil((int(reset) - time.time()) / 60))
                raise rate_limited(
                    f"GitHub API rate limit exceeded. Reset in {minutes} minute{'' if minutes == 1 else 's'}. "
                    "Try again later or use a token with higher rate limits."
                )
            raise forbidden(
                "GitHub API access forbidden (403). Possible causes: "
                "1) API rate limit exceeded, 2) Repository is private, or 3) Authentication issue. "
                "Try logging in again or checking repository permissions."
            )
        raise upstream_error(f"GitHub error: {r.status_code} {r.text[:300]}")

    async def get_repo(self, owner: str, repo: str, token: str | None = None) -> Dict[str, Any]:
        r = await self._client.get(f"/repos/{owner}/{repo}", headers=self._auth(token))
        self._check(r, f"Repository {owner}/{repo} not found or is private.")
        return r.json()

    async def get_default_branch(self, owner: str, repo: str, token: str | None = None) -> str:
        data = await self.get_repo(owner, repo, token)
        return data.get("default_branch") or "main"

    async def get_contents(self, owner: str, repo: str, path: str = "", token: str | None = None) -> List[FileItem]:
        path = path.strip("/")
        url = f"/repos/{owner}/{repo}/contents/{path}" if path else f"/repos/{owner}/{repo}/contents"
        r = await self._client.get(url, headers=self._auth(token))
        self._check(r, f"Repository {owner}/{repo}{'/' + path if path else ''} not found or is private.")
        data = r.json()
        if not isinstance(data, list):
            raise bad_request("Expected directory content but got a file")
        return sort_items(
            FileItem(
                name=item.get("name", ""),
                path=item.get("path", ""),
                type="dir" if item.get("type") == "dir" else "file",
                sha=item.get("sha") or "",
                size=item.get("size") or 0,
                url=item.get("html_url") or "",
            )
            for item in data
        )

    async def _fetch_flat_tree(self, owner: str, repo: str, token: str | None) -> List[Dict[str, Any]]:
        branch = await self.get_default_branch(owner, repo, token)
        auth = self._auth(token)

        r = await self._client.get(f"/repos/{owner}/{repo}/git/ref/heads/{branch}", headers=auth)
        self._check(r, f"Branch {branch} not found in {owner}/{repo}.")
        commit_sha = r.json()["object"]["sha"]

        r = await self._client.get(f"/repos/{owner}/{repo}/git/commits/{commit_sha}", headers=auth)
        self._check(r, f"Commit {commit_sha} not found in {owner}/{repo}.")
        tree_sha = r.json()["tree"]["sha"]

        # recursive tree
        r = await self._client.get(f"/repos/{owner}/{repo}/git/trees/{tree_sha}", params={"recursive": "1"}, headers=auth)
        self._check(r, f"Tree {tree_sha} not found in {owner}/{repo}.")
        data = r.json()
        if data.get("truncated"):
            logger.warning("GitHub returned a truncated tree for %s/%s", owner, repo)

        items = data.get("tree") or []
        if len(items) > settings.max_tree_items:
            items = items[: settings.max_tree_items]
        return [
            {
                "path": it.get("path"),
                "type": "file" if it.get("type") == "blob" else "dir",
                "sha": it.get("sha"),
                "size": it.get("size"),
            }
            for it in items
            if it.get("type") in ("blob", "tree")
        ]

    async def get_tree(self, owner: str, repo: str, token: str | None = None) -> List[TreeNode]:
        flat = await with_retries(lambda: self._fetch_flat_tree(owner, repo, token), what=f"GitHub tree fetch for {owner}/{repo}")
        return build_tree(flat)

    async def get_file_content(self, owner: str, repo: str, path: str, branch: str | None = None, token: str | None = None) -> str:
        key = self.cache.key(self.name, owner, repo, path, branch)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        if has_binary_extension(path):
            raise bad_request(f"Binary file cannot be displayed: {path}")

        params = {"ref": branch} if branch else None
        r = await self._client.get(f"/repos/{owner}/{repo}/contents/{path.strip('/')}", params=params, headers=self._auth(token))
        self._check(r, f"File not found: {path}")
        data = r.json()
        if not isinstance(data, dict) or data.get("type") != "file" or data.get("encoding") != "base64":
            raise bad_request(f"Not a file: {path}")

        raw = safe_b64decode(data.get("content") or "")
        if is_probably_binary_bytes(raw):
            raise bad_request(f"Binary file cannot be displayed: {path}")
        content = raw.decode("utf-8", errors="replace")
        self.cache.put(key, content)
        return content

    async def get_user(self, token: str) -> Dict[str, Any]:
        r = await self._client.get("/user", headers=self._auth(token))
        if r.status_code == 401:
            raise unauthorized("github token is unauthorized")
        self._check(r, "GitHub user not found")
        return r.json()

    def authorize_url(self, state: str, redirect_uri: str) -> str:
        if not settings.github_client_id:
            raise bad_request("GitHub OAuth is not configured (GITHUB_CLIENT_ID)")
        query = urlencode({
            "client_id": settings.github_client_id,
            "redirect_uri": redirect_uri,
            "scope": "repo read:user user:email",
            "state": state,
        })
        return f"{settings.github_oauth_base}/login/oauth/authorize?{query}"

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        if not settings.github_client_id or not settings.github_client_secret:
            raise bad_request("GitHub OAuth is not configured (GITHUB_CLIENT_ID / GITHUB_CLIENT_SECRET)")
        r = await self._client.post(
            f"{settings.github_oauth_base}/login/oauth/access_token",
            data={
                "client_id": settings.github_client_id,
                "client_secret": settings.github_client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
            headers={"Accept": "application/json"},
        )
        if r.status_code >= 400:
            raise upstream_error(f"GitHub code exchange failed: {r.status_code}")
        data = r.json()
        if not data.get("access_token"):
            raise bad_request(data.get("error_description") or data.get("error") or "GitHub did not return an access token")
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            token_type=data.get("token_type") or "bearer",
        )

    async def refresh_access_token(self, refresh_token: str, redirect_uri: str) -> OAuthTokens:
        # OAuth apps on GitHub issue non-expiring tokens; there is nothing to refresh
        raise unauthorized("GitHub tokens cannot be refreshed; user needs to re-authenticate")
