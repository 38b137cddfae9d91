# /api/chat.py
# This module defines the chat endpoint. By default the answer is streamed as Server-Sent Events
# (`data: {"content": ...}` frames ending with `data: [DONE]`); `"stream": false` returns JSON.
from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from api.deps import get_chat_service, get_identity
from api.schemas import ChatReply, ChatRequest
from services.chat_service import ChatService
from services.identity import Identity

router = APIRouter(tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post("/chat", response_model=ChatReply)
async def chat(
    payload: ChatRequest,
    identity: Identity = Depends(get_identity),
    svc: ChatService = Depends(get_chat_service),
):
    if not identity.email and not identity.anonymous_id and payload.anonymous_id:
        identity = Identity(anonymous_id=payload.anonymous_id)

    if not payload.stream:
        return await svc.complete_chat(payload, identity)

    # validate before the response starts so bad requests still get a 400
    svc.normalize(payload)
    return StreamingResponse(svc.stream_chat(payload, identity), media_type="text/event-stream", headers=SSE_HEADERS)
