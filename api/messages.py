# /api/messages.py
# Chat history endpoints: load, save and delete messages, list conversations and record feedback.
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from api.deps import get_chat_store, get_identity
from api.schemas import ChatMessage, ConversationSummary, FeedbackRequest, SaveMessageRequest
from services.identity import Identity
from storage.chat_store import ChatStore
from utils.errors import bad_request, unauthorized, upstream_error

router = APIRouter(tags=["history"])


def _caller(identity: Identity) -> str:
    if not identity.email and not identity.anonymous_id:
        raise unauthorized("User identification required")
    return identity.user_id


@router.get("/chat-messages")
async def get_messages(
    owner: str = Query(..., min_length=1),
    repo: str = Query(..., min_length=1),
    provider: str = Query(default="github"),
    identity: Identity = Depends(get_identity),
    store: ChatStore = Depends(get_chat_store),
):
    messages = await store.get_messages(owner, repo, provider, _caller(identity))
    return {"messages": [m.model_dump(by_alias=True) for m in messages]}


@router.post("/chat-messages")
async def save_message(
    payload: SaveMessageRequest,
    identity: Identity = Depends(get_identity),
    store: ChatStore = Depends(get_chat_store),
):
    ok = await store.save_message(payload.message, payload.owner, payload.repo, payload.provider, _caller(identity))
    if not ok:
        raise upstream_error("Failed to save message")
    return {"success": True, "message": payload.message.model_dump(by_alias=True)}


@router.delete("/chat-messages")
async def delete_messages(
    owner: str = Query(..., min_length=1),
    repo: str = Query(..., min_length=1),
    provider: str = Query(default="github"),
    message_id: Optional[str] = Query(default=None, alias="messageId"),
    clear_all: bool = Query(default=False, alias="clearAll"),
    identity: Identity = Depends(get_identity),
    store: ChatStore = Depends(get_chat_store),
):
    user_id = _caller(identity)
    if clear_all:
        success = await store.clear_history(owner, repo, provider, user_id)
    elif message_id:
        success = await store.delete_message(message_id, user_id)
    else:
        raise bad_request("Either messageId or clearAll parameter is required")
    return {"success": success}


@router.get("/conversations", response_model=List[ConversationSummary], response_model_by_alias=True)
async def list_conversations(
    identity: Identity = Depends(get_identity),
    store: ChatStore = Depends(get_chat_store),
):
    return await store.list_conversations(_caller(identity))


@router.post("/feedback")
async def set_feedback(
    payload: FeedbackRequest,
    identity: Identity = Depends(get_identity),
    store: ChatStore = Depends(get_chat_store),
):
    await store.set_feedback(payload.conversation_id, _caller(identity), payload.feedback)
    return {"success": True, "conversationId": payload.conversation_id, "feedback": payload.feedback}


@router.get("/feedback")
async def get_feedback(
    conversation_id: str = Query(..., min_length=1, alias="conversationId"),
    identity: Identity = Depends(get_identity),
    store: ChatStore = Depends(get_chat_store),
):
    feedback = await store.get_feedback(conversation_id, _caller(identity))
    return {"conversationId": conversation_id, "feedback": feedback}
