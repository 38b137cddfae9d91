# /services/gitlab_client.py
# GitLabProvider talks to the GitLab v4 API (gitlab.com or a self-hosted instance). Projects are
# addressed by their URL-encoded "namespace/project" path, so nested groups work without a lookup.
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote, unquote, urlencode

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
from utils.text import has_binary_extension, is_probably_binary_bytes

logger = logging.getLogger(__name__)

PER_PAGE = 100
AUTH_FAILED = "GitLab authentication failed. Your token may be invalid or expired."


def project_id(owner: str, repo: str) -> str:
    return quote(f"{unquote(owner)}/{unquote(repo)}", safe="")


def is_expired_token_response(r: httpx.Response) -> bool:
    if "invalid_token" in (r.headers.get("www-authenticate") or ""):
        return True
    try:
        body = r.json()
    except ValueError:
        return False
    return isinstance(body, dict) and body.get("error") == "invalid_token"


class GitLabProvider(BaseProvider):
    name = "gitlab"
    display_name = "GitLab"

    def __init__(self, cache: FileCache | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
        super().__init__(cache)
        self.base_url = settings.gitlab_base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/api/v4",
            headers={"User-Agent": "explaingithub/0.1"},
            timeout=httpx.Timeout(settings.http_timeout_s),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @staticmethod
    def _auth(token: str | None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"} if token else {}

    def _check(self, r: httpx.Response, missing: str) -> None:
        if r.status_code < 400:
            return
        if r.status_code == 401:
            raise unauthorized(AUTH_FAILED)
        if r.status_code == 403:
            raise forbidden("GitLab API access forbidden (403). Check the token scopes and project permissions.")
        if r.status_code == 404:
            raise not_found(missing)
        if r.status_code == 429:
            raise rate_limited("GitLab API rate limit exceeded. Try again later.")
        raise upstream_error(f"GitLab error: {r.status_code} {r.text[:300]}")

    async def get_default_branch(self, owner: str, repo: str, token: str | None = None) -> str:
        r = await self._client.get(f"/projects/{project_id(owner, repo)}", headers=self._auth(token))
        self._check(
            r,
            f"Repository {owner}/{repo} not found on GitLab. Please check the repository name "
            "or try setting a custom GitLab instance URL in settings.",
        )
        return r.json().get("default_branch") or "main"

    async def _paginate_tree(self, owner: str, repo: str, params: Dict[str, Any], token: str | None) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        page: Optional[str] = "1"
        while page:
            r = await self._client.get(
                f"/projects/{project_id(owner, repo)}/repository/tree",
                params={**params, "per_page": PER_PAGE, "page": page},
                headers=self._auth(token),
            )
            self._check(r, f"Repository {owner}/{repo} not found on GitLab.")
            data = r.json()
            if not isinstance(data, list):
                raise upstream_error("Unexpected response format from GitLab API")
            items.extend(data)
            if len(items) >= settings.max_tree_items:
                logger.warning("GitLab tree for %s/%s capped at %d items", owner, repo, settings.max_tree_items)
                return items[: settings.max_tree_items]
            page = r.headers.get("x-next-page") or None
        return items

    async def get_contents(self, owner: str, repo: str, path: str = "", token: str | None = None) -> List[FileItem]:
        params: Dict[str, Any] = {}
        if path.strip("/"):
            params["path"] = path.strip("/")
        items = await self._paginate_tree(owner, repo, params, token)
        return sort_items(
            FileItem(
                name=item.get("name", ""),
                path=item.get("path", ""),
                type="dir" if item.get("type") == "tree" else "file",
                sha=item.get("id") or "",
            )
            for item in items
        )

    async def _fetch_flat_tree(self, owner: str, repo: str, token: str | None) -> List[Dict[str, Any]]:
        branch = await self.get_default_branch(owner, repo, token)
        items = await self._paginate_tree(owner, repo, {"recursive": "true", "ref": branch}, token)
        return [
            {"path": it.get("path"), "type": "dir" if it.get("type") == "tree" else "file", "sha": it.get("id")}
            for it in items
        ]

    async def get_tree(self, owner: str, repo: str, token: str | None = None) -> List[TreeNode]:
        flat = await with_retries(lambda: self._fetch_flat_tree(owner, repo, token), what=f"GitLab tree fetch for {owner}/{repo}")
        return build_tree(flat)

    async def get_file_content(self, owner: str, repo: str, path: str, branch: str | None = None, token: str | None = None) -> str:
        key = self.cache.key(self.name, owner, repo, path, branch)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        if has_binary_extension(path):
            raise bad_request(f"Binary file cannot be displayed: {path}")

        ref = branch or await self.get_default_branch(owner, repo, token)
        file_id = quote(unquote(path.strip("/")), safe="")
        r = await self._client.get(
            f"/projects/{project_id(owner, repo)}/repository/files/{file_id}/raw",
            params={"ref": ref},
            headers=self._auth(token),
        )
        self._check(r, f"File not found: {path}")
        if is_probably_binary_bytes(r.content):
            raise bad_request(f"Binary file cannot be displayed: {path}")
        content = r.content.decode("utf-8", errors="replace")
        self.cache.put(key, content)
        return content

    async def get_user(self, token: str) -> Dict[str, Any]:
        r = await self._client.get("/user", headers=self._auth(token))
        if r.status_code == 401:
            if is_expired_token_response(r):
                raise unauthorized("GitLab token is expired")
            raise unauthorized("gitlab token is unauthorized")
        self._check(r, "GitLab user not found")
        return r.json()

    def _require_oauth(self) -> None:
        if not settings.gitlab_client_id or not settings.gitlab_client_secret:
            raise bad_request("GitLab OAuth is not configured (GITLAB_CLIENT_ID / GITLAB_CLIENT_SECRET)")

    def authorize_url(self, state: str, redirect_uri: str) -> str:
        if not settings.gitlab_client_id:
            raise bad_request("GitLab OAuth is not configured (GITLAB_CLIENT_ID)")
        query = urlencode({
            "client_id": settings.gitlab_client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": "read_api read_user read_repository",
            "state": state,
        })
        return f"{self.base_url}/oauth/authorize?{query}"

    async def _token_request(self, form: Dict[str, str]) -> OAuthTokens:
        self._require_oauth()
        # GitLab expects form-encoded parameters, not JSON
        r = await self._client.post(
            f"{self.base_url}/oauth/token",
            data={
                "client_id": settings.gitlab_client_id or "",
                "client_secret": settings.gitlab_client_secret or "",
                **form,
            },
        )
        if r.status_code in (400, 401):
            raise unauthorized(f"GitLab rejected the {form['grant_type']} grant")
        if r.status_code >= 400:
            raise upstream_error(f"GitLab token endpoint failed: {r.status_code}")
        data = r.json()
        if not data.get("access_token"):
            raise upstream_error("GitLab did not return an access token")
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=data.get("expires_in"),
            token_type=data.get("token_type") or "bearer",
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        return await self._token_request({"code": code, "grant_type": "authorization_code", "redirect_uri": redirect_uri})

    async def refresh_access_token(self, refresh_token: str, redirect_uri: str) -> OAuthTokens:
        return await self._token_request({"refresh_token": refresh_token, "grant_type": "refresh_token", "redirect_uri": redirect_uri})
