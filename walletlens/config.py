from pydantic_settings import BaseSettings
from pydantic import Field, model_validator
from functools import lru_cache
from typing import Self


DEFAULT_NATIVE_PRICE_PROXIES = {
    # Wrapped tokens whose market price stands in for the chain's native coin
    "ethereum": "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2",  # WETH
    "polygon": "0x0d500b1d8e8ef31e21c99d1db9a6444d3adf1270",  # WMATIC
    "bsc": "0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c",  # WBNB
    "avalanche": "0xb31f66aa3c1e785363f0875a1b74e27b85fd66c7",  # WAVAX
    "gnosis": "0xe91d153e0b41518a2ce8dd3d7944fa863463a97d",  # WXDAI
    "optimism": "0x4200000000000000000000000000000000000006",
    "base": "0x4200000000000000000000000000000000000006",
    "unichain": "0x4200000000000000000000000000000000000006",
    "arbitrum": "0x82af49447d8a07e3bd95bd0d56f35241523fbab1",
}


class Settings(BaseSettings):
    database_url: str = Field(
        default="sqlite+aiosqlite:///./walletlens.db",
        description="Registry store connection URL",
    )
    redis_url: str | None = Field(
        default=None, description="Distributed cache URL (distributed layer disabled when unset)"
    )
    cache_enabled: bool = Field(default=True, description="Toggle both cache layers")

    # Registry TTLs: metadata >= verified >= unlisted
    token_metadata_ttl_seconds: int = Field(
        default=30 * 24 * 3600, description="Token metadata cache TTL"
    )
    verified_tokens_ttl_seconds: int = Field(
        default=24 * 3600, description="Verified-token registry snapshot TTL"
    )
    unlisted_tokens_ttl_seconds: int = Field(
        default=3600, description="Unlisted-token registry snapshot TTL"
    )
    price_ttl_seconds: int = Field(default=60, description="Per-token price cache TTL")
    portfolio_fallback_ttl_seconds: int = Field(
        default=180, description="How long a portfolio may be served after an upstream outage"
    )

    # Upstream services
    position_provider: str = Field(
        default="zerion", description="DeFi position provider: 'zerion' or 'moralis'"
    )
    zerion_api_key: str | None = Field(default=None, description="Zerion API key")
    moralis_api_key: str | None = Field(default=None, description="Moralis API key")
    alchemy_api_key: str | None = Field(default=None, description="Alchemy API key (prices, metadata)")
    coinmarketcap_api_key: str | None = Field(
        default=None, description="CoinMarketCap API key (token verification)"
    )
    http_timeout_seconds: float = Field(default=10.0, description="Upstream HTTP timeout")

    # Bulkheads and timeouts
    metadata_fetch_concurrency: int = Field(
        default=10, description="Max concurrent token metadata fetches"
    )
    metadata_fetch_timeout_seconds: float = Field(
        default=30.0, description="Hard timeout for one metadata fan-out"
    )
    cache_operation_concurrency: int = Field(
        default=50, description="Max concurrent price-cache reads/writes"
    )
    prices_max_networks_per_batch: int = Field(
        default=3, description="Networks per Prices API request"
    )
    native_price_proxies: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_NATIVE_PRICE_PROXIES),
        description="Per-network wrapped token used to price the native coin",
    )

    # Background metadata writes
    write_queue_capacity: int = Field(default=1000, description="Metadata write queue capacity")
    write_queue_latency_warning_seconds: float = Field(
        default=5.0, description="Warn when an event waited longer than this"
    )
    write_queue_max_retries: int = Field(default=3, description="Retries for a failed metadata write")
    write_queue_workers: int = Field(default=2, description="Metadata writer tasks")

    metrics_port: int = Field(default=8080, description="Port for Prometheus metrics endpoint")
    log_level: str = Field(default="INFO", description="Root log level")

    @model_validator(mode="after")
    def check_cache_ttls(self) -> Self:
        """Registry data changes rarely, unlisted tokens may be promoted later."""
        if not (
            self.token_metadata_ttl_seconds
            >= self.verified_tokens_ttl_seconds
            >= self.unlisted_tokens_ttl_seconds
        ):
            raise ValueError(
                "cache TTLs must satisfy token_metadata >= verified_tokens >= unlisted_tokens"
            )
        if self.position_provider not in ("zerion", "moralis"):
            raise ValueError(f"unknown position_provider '{self.position_provider}'")
        if self.prices_max_networks_per_batch <= 0:
            raise ValueError("prices_max_networks_per_batch must be greater than 0")

        object.__setattr__(
            self,
            "native_price_proxies",
            {k.lower(): v.lower() for k, v in self.native_price_proxies.items()},
        )
        return self

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
