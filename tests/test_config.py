import pytest
from pydantic import ValidationError

from walletlens.config import DEFAULT_NATIVE_PRICE_PROXIES, Settings


class TestSettings:
    def test_defaults(self, settings):
        assert settings.token_metadata_ttl_seconds == 30 * 24 * 3600
        assert settings.verified_tokens_ttl_seconds == 24 * 3600
        assert settings.unlisted_tokens_ttl_seconds == 3600
        assert settings.position_provider == "zerion"
        assert settings.prices_max_networks_per_batch == 3
        assert settings.write_queue_capacity == 1000
        assert settings.redis_url is None

    def test_ttl_ordering_enforced(self):
        with pytest.raises(ValidationError):
            Settings(
                _env_file=None,
                verified_tokens_ttl_seconds=60,
                unlisted_tokens_ttl_seconds=120,
            )

    def test_metadata_ttl_must_cover_verified(self):
        with pytest.raises(ValidationError):
            Settings(
                _env_file=None,
                token_metadata_ttl_seconds=100,
                verified_tokens_ttl_seconds=200,
                unlisted_tokens_ttl_seconds=50,
            )

    def test_equal_ttls_allowed(self):
        settings = Settings(
            _env_file=None,
            token_metadata_ttl_seconds=60,
            verified_tokens_ttl_seconds=60,
            unlisted_tokens_ttl_seconds=60,
        )
        assert settings.unlisted_tokens_ttl_seconds == 60

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, position_provider="debank")

    def test_batch_size_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, prices_max_networks_per_batch=0)

    def test_native_price_proxies_lowercased(self):
        settings = Settings(
            _env_file=None,
            native_price_proxies={"Ethereum": "0xC02AAA39B223FE8D0A0E5C4F27EAD9083C756CC2"},
        )
        assert settings.native_price_proxies == {"ethereum": "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"}

    def test_default_proxies(self, settings):
        assert settings.native_price_proxies["ethereum"] == DEFAULT_NATIVE_PRICE_PROXIES["ethereum"]

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("WRITE_QUEUE_CAPACITY", "25")
        monkeypatch.setenv("POSITION_PROVIDER", "moralis")
        settings = Settings(_env_file=None)
        assert settings.write_queue_capacity == 25
        assert settings.position_provider == "moralis"
