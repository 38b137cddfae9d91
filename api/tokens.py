# /api/tokens.py
# Provider token management for signed-in users, plus the OAuth account-linking flow.

from fastapi import APIRouter, Depends, Query

from api.deps import get_oauth_service, get_token_service, require_email
from api.schemas import RefreshTokenRequest, SaveTokenRequest, ValidateTokenRequest
from services.oauth_service import OAuthService
from services.token_service import TokenService
from utils.errors import not_found


router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/token")
async def list_tokens(email: str = Depends(require_email), tokens: TokenService = Depends(get_token_service)):
    return {"tokens": await tokens.list_tokens(email)}


@router.put("/token")
async def save_token(
    payload: SaveTokenRequest,
    email: str = Depends(require_email),
    tokens: TokenService = Depends(get_token_service),
):
    await tokens.save_token(
        email,
        payload.provider,
        payload.token,
        refresh_token=payload.refresh_token,
        username=payload.username,
    )
    return {"success": True, "message": f"{payload.provider} token saved successfully"}


@router.delete("/token")
async def delete_token(
    provider: str = Query(...),
    email: str = Depends(require_email),
    tokens: TokenService = Depends(get_token_service),
):
    if not await tokens.delete_token(email, provider):
        raise not_found(f"No token found for {provider}")
    return {"success": True}


@router.post("/token/validate")
async def validate_token(
    payload: ValidateTokenRequest,
    email: str = Depends(require_email),
    tokens: TokenService = Depends(get_token_service),
):
    result = await tokens.validate(email, payload.provider, payload.token)
    return result.to_dict()


@router.post("/token/refresh")
async def refresh_token(
    payload: RefreshTokenRequest,
    email: str = Depends(require_email),
    tokens: TokenService = Depends(get_token_service),
):
    return await tokens.refresh(email, payload.provider)


@router.get("/token/current")
async def current_token(
    provider: str = Query(...),
    email: str = Depends(require_email),
    tokens: TokenService = Depends(get_token_service),
):
    token = await tokens.get_token(email, provider)
    if not token:
        raise not_found(f"No valid {provider} token available")
    return {"provider": provider, "token": token}


@router.get("/{provider}/authorize")
async def authorize(
    provider: str,
    email: str = Depends(require_email),
    oauth: OAuthService = Depends(get_oauth_service),
):
    return {"url": oauth.authorize_url(provider, email)}


@router.get("/{provider}/callback")
async def oauth_callback(
    provider: str,
    code: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
    oauth: OAuthService = Depends(get_oauth_service),
):
    linked = await oauth.complete(provider, code, state)
    return {"success": True, **linked}
