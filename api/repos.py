# /api/repos.py
# Repository browsing endpoints: default branch, directory listings, the full tree and file contents.
import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from api.deps import get_history_store, get_identity, get_providers, get_token_service
from api.schemas import FileContentResponse
from services.base_provider import FileItem, TreeNode
from services.identity import Identity
from services.provider_factory import ProviderRegistry
from services.token_service import TokenService
from storage.history_store import HistoryStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/repos/{provider}/{owner}/{repo}", tags=["repositories"])


@router.get("/branch")
async def default_branch(
    provider: str,
    owner: str,
    repo: str,
    identity: Identity = Depends(get_identity),
    providers: ProviderRegistry = Depends(get_providers),
    tokens: TokenService = Depends(get_token_service),
):
    client = providers.get(provider)
    token = await tokens.get_token(identity.email, provider)
    return {"branch": await client.get_default_branch(owner, repo, token=token)}


@router.get("/contents", response_model=List[FileItem])
async def list_contents(
    provider: str,
    owner: str,
    repo: str,
    path: str = Query(default=""),
    identity: Identity = Depends(get_identity),
    providers: ProviderRegistry = Depends(get_providers),
    tokens: TokenService = Depends(get_token_service),
):
    client = providers.get(provider)
    token = await tokens.get_token(identity.email, provider)
    return await client.get_contents(owner, repo, path, token=token)


@router.get("/tree", response_model=List[TreeNode])
async def repository_tree(
    provider: str,
    owner: str,
    repo: str,
    identity: Identity = Depends(get_identity),
    providers: ProviderRegistry = Depends(get_providers),
    tokens: TokenService = Depends(get_token_service),
    history: HistoryStore = Depends(get_history_store),
):
    client = providers.get(provider)
    token = await tokens.get_token(identity.email, provider)
    tree = await client.get_tree(owner, repo, token=token)

    try:
        await history.add(identity.email, provider, owner, repo)
    except Exception:
        logger.exception("Error adding %s/%s to history", owner, repo)
    return tree


@router.get("/file", response_model=FileContentResponse)
async def file_content(
    provider: str,
    owner: str,
    repo: str,
    path: str = Query(..., min_length=1),
    branch: str | None = Query(default=None),
    identity: Identity = Depends(get_identity),
    providers: ProviderRegistry = Depends(get_providers),
    tokens: TokenService = Depends(get_token_service),
):
    client = providers.get(provider)
    token = await tokens.get_token(identity.email, provider)
    content = await client.get_file_content(owner, repo, path, branch=branch, token=token)
    return FileContentResponse(path=path, branch=branch, content=content)
