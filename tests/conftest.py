"""Shared fixtures: in-memory database, fake Redis, mocked Fleeca API."""

import json

import httpx
import pytest
import redis

from fleecapay.common.config import GatewayConfig
from fleecapay.common.db import Base, make_engine, make_session_factory
from fleecapay.services.callback.endpoint import CallbackEndpoint
from fleecapay.services.reconciler.service import PaymentReconciler
from fleecapay.services.reconciler.stores import LogSink, OrderStore, SessionBindingStore
from fleecapay.services.validation.cache import TokenCache
from fleecapay.services.validation.provider import ProviderClient
from fleecapay.services.validation.rate_limit import RateLimiter
from fleecapay.services.validation.service import TokenValidator

API_KEY = "K"
BASE_URL = "https://bank.test"


class Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Just enough of the redis-py API for the cache and rate limiter."""

    def __init__(self, clock: Clock) -> None:
        self.clock = clock
        self.data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key):
        item = self.data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self.clock() >= expires_at:
            del self.data[key]
            return None
        return item

    def get(self, key):
        item = self._live(key)
        return item[0] if item else None

    def setex(self, key, ttl, value):
        self.data[key] = (str(value), self.clock() + ttl)
        return True

    def set(self, key, value, ex=None, nx=False):
        if nx and self._live(key) is not None:
            return None
        self.data[key] = (str(value), self.clock() + ex if ex else None)
        return True

    def incr(self, key):
        item = self._live(key)
        value, expires_at = item if item else ("0", None)
        new = int(value) + 1
        self.data[key] = (str(new), expires_at)
        return new

    def delete(self, *keys):
        removed = 0
        for key in keys:
            removed += 1 if self.data.pop(key, None) is not None else 0
        return removed


class BrokenRedis:
    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis.ConnectionError("redis unavailable")

        return fail


class FakeBank:
    """Scripted Fleeca API: token -> (status, body). Records every request."""

    def __init__(self) -> None:
        self.responses: dict[str, tuple[int, str]] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: Exception | None = None

    def token(self, token: str, payment: int, auth_key: str = API_KEY, **extra) -> None:
        body = {
            "token": token,
            "payment": payment,
            "routing_from": "A",
            "routing_to": "B",
            "auth_key": auth_key,
        }
        body.update(extra)
        self.responses[token] = (200, json.dumps(body))

    def status(self, token: str, status_code: int, body: str = "") -> None:
        self.responses[token] = (status_code, body)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with
        parts = request.url.path.strip("/").split("/")
        token = parts[1] if len(parts) > 1 else ""
        status_code, body = self.responses.get(token, (404, ""))
        return httpx.Response(status_code, text=body)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


@pytest.fixture
def bank():
    return FakeBank()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def provider(bank):
    client = httpx.Client(transport=httpx.MockTransport(bank.handler))
    yield ProviderClient(API_KEY, base_url=BASE_URL, http_client=client)
    client.close()


@pytest.fixture
def cache(fake_redis):
    return TokenCache(fake_redis, ttl_seconds=300)


@pytest.fixture
def validator(provider, cache):
    return TokenValidator(provider, cache)


@pytest.fixture
def orders(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def bindings(session_factory):
    return SessionBindingStore(session_factory)


@pytest.fixture
def log_sink(session_factory):
    return LogSink(session_factory)


@pytest.fixture
def config():
    return GatewayConfig(enabled=True, api_key=API_KEY, callback_base_url="https://shop.test/gateway?token=")


@pytest.fixture
def reconciler(validator, orders, bindings, log_sink, config):
    return PaymentReconciler(validator, orders, bindings, log_sink, config)


@pytest.fixture
def rate_limiter(fake_redis):
    return RateLimiter(fake_redis, limit=5, window_seconds=60, overrides={})


@pytest.fixture
def endpoint(reconciler, rate_limiter, log_sink):
    return CallbackEndpoint(
        reconciler,
        rate_limiter,
        log_sink,
        checkout_url="https://shop.test/checkout",
        receipt_url_template="https://shop.test/order-received/{order_id}",
    )
