# /services/token_service.py
# TokenService resolves the OAuth token to use for a user and provider. Lookups go through three
# tiers, cache-aside: process memory (TTLCache), the user_provider_tokens table, then the provider
# API itself for validation and refresh. Anonymous callers only ever get the server-wide token.
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import httpx
from cachetools import TTLCache

from settings import settings
from services.provider_factory import ProviderRegistry
from storage.db import utcnow
from storage.token_store import StoredToken, TokenStore
from utils.errors import AppError, not_found, not_implemented, unauthorized

logger = logging.getLogger(__name__)


def redirect_uri_for(provider: str) -> str:
    return f"{settings.public_base_url.rstrip('/')}/auth/{provider}/callback"


@dataclass
class ValidationResult:
    is_valid: bool
    username: str | None = None
    needs_refresh: bool = False
    error: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"isValid": self.is_valid, "needsRefresh": self.needs_refresh}
        if self.username:
            out["username"] = self.username
        if self.error:
            out["error"] = self.error
        return out


def _ms(value: datetime | None) -> int | None:
    return int(value.timestamp() * 1000) if value else None


class TokenService:
    def __init__(self, store: TokenStore, providers: ProviderRegistry) -> None:
        self.store = store
        self.providers = providers
        self._memory: TTLCache = TTLCache(maxsize=2048, ttl=settings.token_validation_interval_s)

    # --- persistence -------------------------------------------------------------------------

    async def save_token(
        self,
        email: str,
        provider: str,
        token: str,
        refresh_token: str | None = None,
        username: str | None = None,
        expires_at: datetime | None = None,
    ) -> StoredToken:
        self.providers.get(provider)  # rejects unknown provider names
        now = utcnow()
        if expires_at is None and provider == "gitlab":
            expires_at = now + timedelta(seconds=settings.gitlab_token_lifetime_s)
        stored = StoredToken(
            email=email,
            provider=provider,
            access_token=token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            username=username,
            is_valid=True,
            last_validated_at=now,
        )
        await self.store.upsert(stored)
        self._memory[(email, provider)] = stored
        logger.info("Saved %s token for %s", provider, email)
        return stored

    async def list_tokens(self, email: str) -> Dict[str, Dict[str, Any]]:
        return {
            t.provider: {
                "token": t.access_token,
                "refreshToken": t.refresh_token,
                "expiresAt": _ms(t.expires_at),
                "provider": t.provider,
                "userId": t.username,
                "isValid": t.is_valid,
            }
            for t in await self.store.list(email)
        }

    async def delete_token(self, email: str, provider: str) -> bool:
        self._memory.pop((email, provider), None)
        return await self.store.delete(email, provider)

    async def _mark(self, email: str | None, provider: str, is_valid: bool) -> None:
        if not email:
            return
        try:
            await self.store.mark(email, provider, is_valid)
        except Exception:
            logger.exception("Error updating %s token status for %s", provider, email)
        cached = self._memory.get((email, provider))
        if cached is not None:
            cached.is_valid = is_valid
            cached.last_validated_at = utcnow()

    # --- validation / refresh ----------------------------------------------------------------

    async def validate(self, email: str | None, provider: str, token: str) -> ValidationResult:
        client = self.providers.get(provider)
        if not client.implemented:
            raise not_implemented(f"Validation not implemented for provider: {provider}")

        try:
            user = await client.get_user(token)
        except AppError as e:
            if e.status_code == 501:
                raise
            await self._mark(email, provider, False)
            if e.status_code == 401:
                return ValidationResult(is_valid=False, needs_refresh=True, error=e.message)
            return ValidationResult(is_valid=False, error=f"Error validating {provider} token: {e.message}")
        except httpx.HTTPError as e:
            await self._mark(email, provider, False)
            return ValidationResult(is_valid=False, error=f"Error validating {provider} token: {e}")

        needs_refresh = False
        if email:
            stored = await self.store.get(email, provider)
            if stored is not None:
                await self._mark(email, provider, True)
                if stored.expires_at is not None:
                    remaining = (stored.expires_at - utcnow()).total_seconds()
                    needs_refresh = remaining < settings.token_expiry_warning_s
        return ValidationResult(is_valid=True, username=client.username_of(user), needs_refresh=needs_refresh)

    def _payload(self, t: StoredToken) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "provider": t.provider,
            "token": t.access_token,
            "username": t.username,
            "isValid": t.is_valid,
        }
        if t.refresh_token:
            out["refreshToken"] = t.refresh_token
        if t.expires_at:
            out["expiresAt"] = t.expires_at.isoformat()
        return out

    async def refresh(self, email: str, provider: str) -> Dict[str, Any]:
        stored = await self.store.get(email, provider)
        if stored is None:
            raise not_found(f"No token found for {provider}")

        now = utcnow()
        expiring = stored.expires_at is not None and (stored.expires_at - now).total_seconds() < settings.token_refresh_threshold_s
        recently_validated = (
            stored.last_validated_at is not None
            and (now - stored.last_validated_at).total_seconds() < settings.token_recent_validation_s
        )
        if stored.is_valid and recently_validated and not expiring:
            logger.debug("%s token for %s validated recently; nothing to refresh", provider, email)
            return self._payload(stored)

        logger.info("Attempting to refresh %s token for %s", provider, email)
        if provider == "github":
            return await self._refresh_by_validation(stored)
        if provider == "gitlab":
            return await self._refresh_by_grant(stored)
        raise not_implemented(f"Refresh not implemented for provider: {provider}")

    async def _refresh_by_validation(self, stored: StoredToken) -> Dict[str, Any]:
        # GitHub OAuth apps issue no refresh tokens; a refresh is a revalidation
        result = await self.validate(stored.email, stored.provider, stored.access_token)
        if not result.is_valid:
            raise unauthorized("GitHub token is invalid, user needs to re-authenticate")
        stored.is_valid = True
        stored.username = result.username or stored.username
        return self._payload(stored)

    async def _refresh_by_grant(self, stored: StoredToken) -> Dict[str, Any]:
        label = self.providers.get(stored.provider).display_name
        if not stored.refresh_token:
            await self._mark(stored.email, stored.provider, False)
            raise unauthorized(f"No {label} refresh token available, user needs to re-authenticate")

        client = self.providers.get(stored.provider)
        try:
            tokens = await client.refresh_access_token(stored.refresh_token, redirect_uri_for(stored.provider))
        except (AppError, httpx.HTTPError) as e:
            logger.warning("%s token refresh failed for %s: %s", label, stored.email, e)
            await self._mark(stored.email, stored.provider, False)
            raise unauthorized(f"{label} token refresh failed") from e

        lifetime = tokens.expires_in or settings.gitlab_token_lifetime_s
        refreshed = await self.save_token(
            stored.email,
            stored.provider,
            tokens.access_token,
            refresh_token=tokens.refresh_token or stored.refresh_token,
            username=stored.username,
            expires_at=utcnow() + timedelta(seconds=lifetime),
        )
        return self._payload(refreshed)

    async def _try_refresh(self, email: str, provider: str) -> Optional[str]:
        try:
            return (await self.refresh(email, provider))["token"]
        except AppError as e:
            logger.info("Could not refresh %s token for %s: %s", provider, email, e.message)
            return None

    # --- resolution --------------------------------------------------------------------------

    @staticmethod
    def _fallback(provider: str) -> Optional[str]:
        if provider == "github":
            return settings.github_token
        return None

    async def _lookup(self, email: str, provider: str) -> Optional[StoredToken]:
        key: Tuple[str, str] = (email, provider)
        token = self._memory.get(key)
        if token is None:
            token = await self.store.get(email, provider)
            if token is not None:
                self._memory[key] = token
        return token

    async def get_token(self, email: str | None, provider: str) -> Optional[str]:
        """Best token to call the provider with for this user, or None if there is none."""
        if not email:
            return self._fallback(provider)

        token = await self._lookup(email, provider)
        if token is None:
            return self._fallback(provider)

        now = utcnow()
        if token.expires_at is not None:
            remaining = (token.expires_at - now).total_seconds()
            if remaining <= 0:
                logger.info("%s token for %s has expired, attempting refresh", provider, email)
                return await self._try_refresh(email, provider)
            if remaining < settings.token_refresh_threshold_s:
                logger.info("%s token for %s will expire soon, refreshing proactively", provider, email)
                return await self._try_refresh(email, provider) or token.access_token

        stale = (
            token.last_validated_at is None
            or (now - token.last_validated_at).total_seconds() > settings.token_validation_interval_s
        )
        if stale or not token.is_valid:
            result = await self.validate(email, provider, token.access_token)
            if not result.is_valid:
                return await self._try_refresh(email, provider)
        return token.access_token
