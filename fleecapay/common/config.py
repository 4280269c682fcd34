"""Central environment-driven settings plus the gateway configuration struct.

The process loads `settings` once at startup. Gateway behavior is read through a
settings store so the reconciliation core never touches environment variables
directly.
"""

from typing import Any

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "fleeca-callback"
    log_level: str = "INFO"
    redis_url: str = "redis://redis:6379/0"
    database_dsn: str = "sqlite+pysqlite:///./fleecapay.db"
    provider_base_url: str = "https://banking.gta.world"
    api_key: str = ""
    admin_api_key: str = ""
    callback_base_url: str = "http://localhost:8000/gateway?token="
    checkout_url: str = "http://localhost:8000/checkout"
    receipt_url_template: str = "http://localhost:8000/checkout/order-received/{order_id}"
    fleeca_enabled: bool = False
    sandbox_mode: bool = False
    debug_mode: bool = False
    supported_currency: str = "USD"
    store_currency: str = "USD"
    token_cache_ttl_seconds: int = 300
    callback_rate_limit: int = 5
    callback_rate_limit_overrides: dict[str, int] = {}
    rate_limit_window_seconds: int = 60
    trusted_proxy_ips: str = ""
    provider_timeout_seconds: float = 15.0
    reconcile_deadline_seconds: float = 20.0
    client_version: str = "1.0"
    otel_exporter_otlp_endpoint: str = ""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def trusted_proxy_ips_set(self) -> set[str]:
        return {ip.strip() for ip in self.trusted_proxy_ips.split(",") if ip.strip()}


settings = CommonSettings()


# Single table of gateway defaults; everything else reads through GatewayConfig.
GATEWAY_DEFAULTS: dict[str, Any] = {
    "enabled": False,
    "api_key": "",
    "callback_base_url": "",
    "sandbox_mode": False,
    "debug_mode": False,
}


class SettingsStore:
    """Key/value view over `CommonSettings` used by the gateway.

    Keys are the gateway keys from `GATEWAY_DEFAULTS`; a few of them live under a
    different attribute name in the environment settings.
    """

    _aliases = {"enabled": "fleeca_enabled"}

    def __init__(self, source: CommonSettings | None = None, overrides: dict[str, Any] | None = None) -> None:
        self.source = source or settings
        self.overrides = dict(overrides or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.overrides:
            return self.overrides[key]
        return getattr(self.source, self._aliases.get(key, key), default)


def normalize_callback_url(url: str) -> str:
    """Make sure the callback URL ends with a `token=` query parameter."""

    if "?token=" in url or "&token=" in url:
        return url
    return f"{url}&token=" if "?" in url else f"{url}?token="


class GatewayConfig(BaseModel):
    """Explicit gateway configuration, loaded once per process."""

    enabled: bool = GATEWAY_DEFAULTS["enabled"]
    api_key: str = GATEWAY_DEFAULTS["api_key"]
    callback_base_url: str = GATEWAY_DEFAULTS["callback_base_url"]
    sandbox_mode: bool = GATEWAY_DEFAULTS["sandbox_mode"]
    debug_mode: bool = GATEWAY_DEFAULTS["debug_mode"]

    @classmethod
    def load(cls, store: SettingsStore) -> "GatewayConfig":
        values = {key: store.get(key, default) for key, default in GATEWAY_DEFAULTS.items()}
        if values["callback_base_url"]:
            values["callback_base_url"] = normalize_callback_url(values["callback_base_url"])
        return cls(**values)
