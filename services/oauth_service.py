# /services/oauth_service.py
# Links a provider account to a signed-in user through the OAuth web flow. The random `state`
# sent to the provider is bound to the user's email in a short-lived cache and consumed once.
import logging
import secrets
from datetime import timedelta
from typing import Dict

from cachetools import TTLCache

from settings import settings
from services.provider_factory import ProviderRegistry
from services.token_service import TokenService, redirect_uri_for
from storage.db import utcnow
from utils.errors import bad_request

logger = logging.getLogger(__name__)


class OAuthService:
    def __init__(self, providers: ProviderRegistry, tokens: TokenService) -> None:
        self.providers = providers
        self.tokens = tokens
        self._states: TTLCache = TTLCache(maxsize=4096, ttl=settings.oauth_state_ttl_s)

    def authorize_url(self, provider: str, email: str) -> str:
        client = self.providers.get(provider)
        state = secrets.token_urlsafe(24)
        url = client.authorize_url(state, redirect_uri_for(provider))
        self._states[state] = (email, provider)
        return url

    async def complete(self, provider: str, code: str, state: str) -> Dict[str, str | None]:
        entry = self._states.pop(state, None)
        if entry is None or entry[1] != provider:
            raise bad_request("Invalid or expired OAuth state")
        email = entry[0]

        client = self.providers.get(provider)
        tokens = await client.exchange_code(code, redirect_uri_for(provider))
        user = await client.get_user(tokens.access_token)
        username = client.username_of(user)

        expires_at = utcnow() + timedelta(seconds=tokens.expires_in) if tokens.expires_in else None
        await self.tokens.save_token(
            email,
            provider,
            tokens.access_token,
            refresh_token=tokens.refresh_token,
            username=username,
            expires_at=expires_at,
        )
        logger.info("Linked %s account %s to %s", provider, username, email)
        return {"provider": provider, "username": username}
