from datetime import timedelta

import pytest

from services.base_provider import OAuthTokens
from services.provider_factory import ProviderRegistry
from services.token_service import TokenService, redirect_uri_for
from settings import settings
from storage.db import utcnow
from storage.token_store import StoredToken, TokenStore
from tests.fakes import FakeProvider
from utils.errors import AppError, unauthorized

EMAIL = "dev@example.com"


@pytest.fixture
def github():
    return FakeProvider("github")


@pytest.fixture
def gitlab():
    return FakeProvider("gitlab", user={"username": "tanuki"})


@pytest.fixture
def store(db):
    return TokenStore(db)


@pytest.fixture
def service(store, github, gitlab):
    return TokenService(store, ProviderRegistry({"github": github, "gitlab": gitlab}))


def fresh_service(service):
    """Same database, empty memory tier."""
    return TokenService(service.store, service.providers)


def test_redirect_uri(monkeypatch):
    monkeypatch.setattr(settings, "public_base_url", "https://explain.example/")
    assert redirect_uri_for("gitlab") == "https://explain.example/auth/gitlab/callback"


async def test_save_and_list_tokens(service):
    await service.save_token(EMAIL, "github", "gho_1", username="octocat")
    await service.save_token(EMAIL, "gitlab", "glpat", refresh_token="r1")

    tokens = await service.list_tokens(EMAIL)
    assert tokens["github"] == {
        "token": "gho_1", "refreshToken": None, "expiresAt": None,
        "provider": "github", "userId": "octocat", "isValid": True,
    }
    # GitLab tokens get the default two hour lifetime
    expires_at = tokens["gitlab"]["expiresAt"] / 1000
    remaining = expires_at - utcnow().timestamp()
    assert 7100 < remaining <= 7200


async def test_save_token_rejects_unknown_provider(service):
    with pytest.raises(AppError) as exc:
        await service.save_token(EMAIL, "sourceforge", "t")
    assert exc.value.status_code == 400


async def test_delete_token(service):
    await service.save_token(EMAIL, "github", "gho_1")
    assert await service.delete_token(EMAIL, "github") is True
    assert await service.delete_token(EMAIL, "github") is False
    assert await service.get_token(EMAIL, "github") is None


async def test_anonymous_callers_get_the_server_token(service, monkeypatch):
    monkeypatch.setattr(settings, "github_token", "server-token")
    assert await service.get_token(None, "github") == "server-token"
    assert await service.get_token(None, "gitlab") is None
    assert await service.get_token("new@example.com", "github") == "server-token"


async def test_recently_validated_token_is_used_without_a_provider_call(service, github):
    await service.save_token(EMAIL, "github", "gho_1")
    assert await fresh_service(service).get_token(EMAIL, "github") == "gho_1"
    assert github.calls == []


async def test_stale_token_is_revalidated(service, store, github):
    await store.upsert(StoredToken(
        email=EMAIL, provider="github", access_token="gho_1",
        last_validated_at=utcnow() - timedelta(hours=1),
    ))
    assert await service.get_token(EMAIL, "github") == "gho_1"
    assert github.calls == [("user", "gho_1")]
    assert (await store.get(EMAIL, "github")).last_validated_at > utcnow() - timedelta(minutes=1)


async def test_invalid_github_token_resolves_to_nothing(service, store, github):
    github.user_error = unauthorized("github token is unauthorized")
    await store.upsert(StoredToken(
        email=EMAIL, provider="github", access_token="gho_revoked",
        last_validated_at=utcnow() - timedelta(hours=1),
    ))
    assert await service.get_token(EMAIL, "github") is None
    assert (await store.get(EMAIL, "github")).is_valid is False


async def test_expired_gitlab_token_is_refreshed(service, store, gitlab):
    gitlab.refreshed = OAuthTokens(access_token="glpat-new", refresh_token="r2", expires_in=7200)
    await service.save_token(EMAIL, "gitlab", "glpat-old", refresh_token="r1", expires_at=utcnow() - timedelta(minutes=1))

    assert await service.get_token(EMAIL, "gitlab") == "glpat-new"
    assert ("refresh", "r1") in gitlab.calls
    stored = await store.get(EMAIL, "gitlab")
    assert (stored.access_token, stored.refresh_token) == ("glpat-new", "r2")
    assert stored.expires_at > utcnow() + timedelta(minutes=100)


async def test_expired_token_without_refresh_resolves_to_nothing(service, store, gitlab):
    await service.save_token(EMAIL, "gitlab", "glpat-old", expires_at=utcnow() - timedelta(minutes=1))
    assert await service.get_token(EMAIL, "gitlab") is None
    assert (await store.get(EMAIL, "gitlab")).is_valid is False


async def test_expiring_token_is_kept_when_refresh_fails(service, gitlab):
    await service.save_token(EMAIL, "gitlab", "glpat-current", refresh_token="r1", expires_at=utcnow() + timedelta(minutes=5))
    assert await service.get_token(EMAIL, "gitlab") == "glpat-current"
    assert ("refresh", "r1") in gitlab.calls


async def test_validate_reports_username_and_upcoming_expiry(service, gitlab):
    await service.save_token(EMAIL, "gitlab", "glpat", refresh_token="r1", expires_at=utcnow() + timedelta(minutes=10))
    result = await service.validate(EMAIL, "gitlab", "glpat")
    assert result.to_dict() == {"isValid": True, "needsRefresh": True, "username": "tanuki"}


async def test_validate_unauthorized_token(service, github):
    github.user_error = unauthorized("github token is unauthorized")
    result = await service.validate(EMAIL, "github", "bad")
    assert result.to_dict() == {"isValid": False, "needsRefresh": True, "error": "github token is unauthorized"}


async def test_validate_other_provider_errors(service, github):
    github.user_error = AppError(502, "GitHub error: 500")
    result = await service.validate(None, "github", "t")
    assert result.is_valid is False
    assert result.needs_refresh is False
    assert result.error == "Error validating github token: GitHub error: 500"


async def test_placeholder_providers_are_not_implemented(service):
    with pytest.raises(AppError) as exc:
        await service.validate(EMAIL, "azure", "t")
    assert exc.value.status_code == 501
    await service.save_token(EMAIL, "bitbucket", "t", expires_at=utcnow())
    with pytest.raises(AppError) as exc:
        await service.refresh(EMAIL, "bitbucket")
    assert exc.value.status_code == 501


async def test_refresh_missing_token(service):
    with pytest.raises(AppError) as exc:
        await service.refresh(EMAIL, "github")
    assert (exc.value.status_code, exc.value.message) == (404, "No token found for github")


async def test_refresh_skips_recently_validated_token(service, github):
    await service.save_token(EMAIL, "github", "gho_1", username="octocat")
    payload = await service.refresh(EMAIL, "github")
    assert payload["token"] == "gho_1"
    assert github.calls == []


async def test_github_refresh_is_a_revalidation(service, store, github):
    await store.upsert(StoredToken(email=EMAIL, provider="github", access_token="gho_1", is_valid=False))
    payload = await service.refresh(EMAIL, "github")
    assert payload["username"] == "octocat"
    assert payload["isValid"] is True

    github.user_error = unauthorized("github token is unauthorized")
    await store.upsert(StoredToken(email=EMAIL, provider="github", access_token="gho_1", is_valid=False))
    with pytest.raises(AppError) as exc:
        await service.refresh(EMAIL, "github")
    assert exc.value.message == "GitHub token is invalid, user needs to re-authenticate"


async def test_gitlab_refresh_without_refresh_token(service):
    await service.save_token(EMAIL, "gitlab", "glpat", expires_at=utcnow() + timedelta(minutes=1))
    with pytest.raises(AppError) as exc:
        await service.refresh(EMAIL, "gitlab")
    assert exc.value.status_code == 401
    assert exc.value.message == "No GitLab refresh token available, user needs to re-authenticate"
