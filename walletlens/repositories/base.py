"""Per-network registry snapshots over the layered cache."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, List, TypeVar

from walletlens.networks import Network
from walletlens.services.cache import CacheStore, DistributedCache
from walletlens.services.metrics import record_registry_load

E = TypeVar("E")


def network_key(network: Network | str) -> str:
    return network.value if isinstance(network, Network) else str(network).lower()


class NetworkSnapshotRepository(ABC, Generic[E]):
    """Address-keyed snapshot of one registry table, one snapshot per network.

    Cold snapshots are loaded once per key even under concurrent callers;
    warm snapshots are served straight from process memory until their TTL
    runs out or a write invalidates them.
    """

    registry_name = "registry"

    def __init__(self, store, cache: CacheStore, ttl_seconds: float):
        self._store = store
        self._cache = cache
        self._ttl = ttl_seconds

    @abstractmethod
    async def _load_rows(self, network: str) -> List[E]:
        """Read every entry for a network from the source of truth."""
        pass

    @abstractmethod
    def _decode(self, data: Dict[str, Any]) -> E:
        pass

    def cache_key(self, network: Network | str) -> str:
        return DistributedCache.generate_key(self.registry_name, network_key(network))

    async def get_all(self, network: Network | str) -> Dict[str, E]:
        key = network_key(network)
        return await self._cache.get_or_load(
            self.cache_key(key),
            lambda: self._load(key),
            self._ttl,
            encode=lambda snapshot: [entry.to_dict() for entry in snapshot.values()],
            decode=lambda payload: {
                entry.contract_address: entry for entry in map(self._decode, payload)
            },
        )

    async def get(self, network: Network | str, address: str) -> E | None:
        snapshot = await self.get_all(network)
        return snapshot.get(address.lower())

    async def contains(self, network: Network | str, address: str) -> bool:
        return await self.get(network, address) is not None

    async def invalidate(self, network: Network | str) -> None:
        await self._cache.invalidate(self.cache_key(network))

    async def _load(self, network: str) -> Dict[str, E]:
        record_registry_load(self.registry_name, network)
        rows = await self._load_rows(network)
        return {row.contract_address: row for row in rows}
