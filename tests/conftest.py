import pytest
from unittest.mock import AsyncMock

from walletlens.config import Settings, get_settings
from walletlens.database import Database
from walletlens.networks import Network
from walletlens.providers.base import PositionProvider
from walletlens.repositories.store import RegistryStore
from walletlens.services.cache import CacheStore, DistributedCache

WALLET = "0x1234567890123456789012345678901234567890"


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis (get/set/delete only)."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.get_calls = 0
        self.set_calls = 0

    async def get(self, key):
        self.get_calls += 1
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self.set_calls += 1
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self):
        pass


class FakeProvider(PositionProvider):
    """Provider whose positions and balances come from AsyncMocks."""

    def __init__(self, networks=(Network.ETHEREUM, Network.BASE, Network.POLYGON)):
        self._networks = frozenset(networks)
        self.fetch = AsyncMock(return_value=[])
        self.balances = AsyncMock(return_value=[])

    @property
    def name(self):
        return "fake"

    @property
    def supported_networks(self):
        return self._networks

    async def fetch_positions(self, wallet_address, network):
        return await self.fetch(wallet_address, network)

    async def fetch_balances(self, wallet_address, network):
        return await self.balances(wallet_address, network)


class BrokenRedis(FakeRedis):
    """Every call fails as if the connection were down."""

    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, value, ex=None):
        raise ConnectionError("redis down")

    async def delete(self, key):
        raise ConnectionError("redis down")


@pytest.fixture(autouse=True)
def reset_settings_cache():
    """Settings are lru_cached; keep environment tweaks from leaking between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await db.init_db()
    yield db
    await db.close()


@pytest.fixture
def store(database):
    return RegistryStore(database)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def cache(fake_redis):
    return CacheStore(DistributedCache(fake_redis))
