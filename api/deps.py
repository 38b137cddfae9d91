# /api/deps.py
# FastAPI dependencies: services are built once in main.lifespan and kept on app.state;
# the caller's identity comes from headers set by the sign-in layer.
from typing import Optional

from fastapi import Depends, Header, Request

from services.chat_service import ChatService
from services.identity import Identity
from services.oauth_service import OAuthService
from services.provider_factory import ProviderRegistry
from services.token_service import TokenService
from storage.chat_store import ChatStore
from storage.history_store import HistoryStore
from utils.errors import unauthorized


def get_identity(
    x_user_email: Optional[str] = Header(default=None),
    x_anonymous_id: Optional[str] = Header(default=None),
) -> Identity:
    email = (x_user_email or "").strip() or None
    anon = (x_anonymous_id or "").strip() or None
    return Identity(email=email, anonymous_id=anon)


def require_email(identity: Identity = Depends(get_identity)) -> str:
    if not identity.email:
        raise unauthorized("Unauthorized")
    return identity.email


def get_providers(request: Request) -> ProviderRegistry:
    return request.app.state.providers


def get_token_service(request: Request) -> TokenService:
    return request.app.state.tokens


def get_oauth_service(request: Request) -> OAuthService:
    return request.app.state.oauth


def get_chat_service(request: Request) -> ChatService:
    return request.app.state.chat


def get_chat_store(request: Request) -> ChatStore:
    return request.app.state.chat_store


def get_history_store(request: Request) -> HistoryStore:
    return request.app.state.history
