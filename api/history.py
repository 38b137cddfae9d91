# /api/history.py
from typing import List

from fastapi import APIRouter, Depends

from api.deps import get_history_store, require_email
from api.schemas import RepoHistoryItem
from storage.history_store import HistoryStore

router = APIRouter(tags=["history"])


@router.get("/history", response_model=List[RepoHistoryItem])
async def repo_history(email: str = Depends(require_email), history: HistoryStore = Depends(get_history_store)):
    return await history.list(email)
