"""Redis-backed cache of provider token validations."""

import hashlib

import redis
from pydantic import ValidationError

from fleecapay.common.config import settings
from fleecapay.common.logging import logger
from fleecapay.common.metrics import token_cache_lookups_total
from fleecapay.services.validation.schemas import ValidationResult


class TokenCache:
    """Bounded-TTL cache mapping `(token, strict)` to a `ValidationResult`.

    The cache is advisory: read/write failures are logged and treated as a miss,
    the worst outcome being one extra provider call.
    """

    prefix = "fleeca:token:"

    def __init__(self, client: redis.Redis, ttl_seconds: int | None = None, service_name: str | None = None) -> None:
        self.client = client
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.token_cache_ttl_seconds
        self.service_name = service_name or settings.service_name

    @classmethod
    def cache_key(cls, token: str, strict: bool) -> str:
        scope = "strict" if strict else "nonstrict"
        digest = hashlib.sha256(f"{token}_{scope}".encode("utf-8")).hexdigest()
        return f"{cls.prefix}{digest}"

    def get(self, key: str) -> ValidationResult | None:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            logger.warning("token_cache_read_failed: %s", exc)
            token_cache_lookups_total.labels(service=self.service_name, result="error").inc()
            return None
        if raw is None:
            token_cache_lookups_total.labels(service=self.service_name, result="miss").inc()
            return None
        try:
            result = ValidationResult.model_validate_json(raw)
        except ValidationError:
            logger.warning("token_cache_entry_corrupt key=%s", key)
            self.invalidate(key)
            token_cache_lookups_total.labels(service=self.service_name, result="miss").inc()
            return None
        token_cache_lookups_total.labels(service=self.service_name, result="hit").inc()
        return result

    def put(self, key: str, result: ValidationResult, ttl: int | None = None) -> None:
        try:
            self.client.setex(key, ttl or self.ttl_seconds, result.model_dump_json())
        except redis.RedisError as exc:
            logger.warning("token_cache_write_failed: %s", exc)

    def invalidate(self, key: str) -> None:
        try:
            self.client.delete(key)
        except redis.RedisError as exc:
            logger.warning("token_cache_delete_failed: %s", exc)

    def invalidate_token(self, token: str) -> None:
        """Drop both the strict and non-strict entries for one token."""

        self.invalidate(self.cache_key(token, strict=False))
        self.invalidate(self.cache_key(token, strict=True))
