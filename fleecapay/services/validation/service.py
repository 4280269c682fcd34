"""Token validation: cache in front of the provider call."""

from fleecapay.common.errors import MissingToken
from fleecapay.services.validation.cache import TokenCache
from fleecapay.services.validation.provider import ProviderClient
from fleecapay.services.validation.schemas import ValidationResult


class TokenValidator:
    """Validates tokens through the cache, falling back to the provider.

    `bypass_cache=True` skips the lookup but still stores a fresh success, so the
    money decision is never made from a cached entry.
    """

    def __init__(self, provider: ProviderClient, cache: TokenCache) -> None:
        self.provider = provider
        self.cache = cache

    def validate(self, token: str, strict: bool = False, bypass_cache: bool = False) -> ValidationResult:
        if not token:
            raise MissingToken("Token is required for validation")

        key = TokenCache.cache_key(token, strict)
        if not bypass_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        # Errors propagate uncached.
        result = self.provider.validate(token, strict)
        self.cache.put(key, result)
        return result

    def invalidate(self, token: str) -> None:
        self.cache.invalidate_token(token)
