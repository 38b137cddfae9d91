# /api/routes.py
# This module defines the main API router for the ExplainGithub application, which includes all the
# individual endpoint routers.
from fastapi import APIRouter, Depends

from api.chat import router as chat_router
from api.deps import get_providers
from api.history import router as history_router
from api.messages import router as messages_router
from api.repos import router as repos_router
from api.tokens import router as tokens_router
from services.provider_factory import ProviderRegistry

router = APIRouter()
router.include_router(repos_router)
router.include_router(chat_router)
router.include_router(messages_router)
router.include_router(tokens_router)
router.include_router(history_router)


@router.get("/health", tags=["meta"])
async def health():
    return {"status": "ok"}


@router.get("/providers", tags=["meta"])
async def list_providers(providers: ProviderRegistry = Depends(get_providers)):
    return {
        "supported": providers.supported(),
        "providers": [{"name": p.name, "displayName": p.display_name, "implemented": p.implemented} for p in providers.all()],
    }
