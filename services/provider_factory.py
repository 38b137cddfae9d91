# /services/provider_factory.py
# ProviderRegistry owns one instance per provider type; Azure and Bitbucket are placeholders.
from typing import Dict, List

from services.base_provider import PROVIDER_TYPES, BaseProvider, FileCache, PlaceholderProvider
from services.github_client import GitHubProvider
from services.gitlab_client import GitLabProvider
from utils.errors import bad_request


class ProviderRegistry:
    def __init__(self, providers: Dict[str, BaseProvider] | None = None) -> None:
        if providers is None:
            cache = FileCache()
            providers = {
                "github": GitHubProvider(cache=cache),
                "gitlab": GitLabProvider(cache=cache),
            }
        self._providers: Dict[str, BaseProvider] = dict(providers)
        for name in PROVIDER_TYPES:
            self._providers.setdefault(name, PlaceholderProvider(name))

    def get(self, provider: str) -> BaseProvider:
        try:
            return self._providers[provider]
        except KeyError:
            raise bad_request(f"Unknown provider type: {provider}") from None

    def all(self) -> List[BaseProvider]:
        return list(self._providers.values())

    def supported(self) -> List[str]:
        return [name for name, p in self._providers.items() if p.implemented]

    async def aclose(self) -> None:
        for p in self._providers.values():
            await p.aclose()
