"""Token metadata registry, cached per (network, address)."""

from __future__ import annotations

import logging
from typing import Dict, List, Sequence

from walletlens.networks import Network
from walletlens.repositories.base import network_key
from walletlens.repositories.entries import TokenMetadataEntry
from walletlens.repositories.store import RegistryStore
from walletlens.services.cache import CacheStore, DistributedCache

logger = logging.getLogger(__name__)


class TokenMetadataRepository:
    KEY_PREFIX = "token_metadata"

    def __init__(self, store: RegistryStore, cache: CacheStore, ttl_seconds: float):
        self._store = store
        self._cache = cache
        self._ttl = ttl_seconds

    def cache_key(self, network: Network | str, address: str) -> str:
        return DistributedCache.generate_key(self.KEY_PREFIX, network_key(network), address.lower())

    async def get(self, network: Network | str, address: str) -> TokenMetadataEntry | None:
        found = await self.get_many(network, [address])
        return found.get(address.lower())

    async def get_many(
        self, network: Network | str, addresses: Sequence[str]
    ) -> Dict[str, TokenMetadataEntry]:
        """Cache first, then one store query for whatever is left."""
        net = network_key(network)
        found: Dict[str, TokenMetadataEntry] = {}
        missing: List[str] = []

        for address in {a.lower() for a in addresses}:
            key = self.cache_key(net, address)
            entry = self._cache.peek(key)
            if entry is None and self._cache.enabled:
                payload = await self._cache.distributed.get(key)
                if payload is not None:
                    entry = TokenMetadataEntry.from_dict(payload)
                    self._cache.memory.set(key, entry, self._ttl)
            if entry is None:
                missing.append(address)
            else:
                found[address] = entry

        if missing:
            for entry in await self._store.load_metadata(net, missing):
                found[entry.contract_address] = entry
                await self._cache.set(
                    self.cache_key(net, entry.contract_address), entry, self._ttl, payload=entry.to_dict()
                )

        return found

    async def add_or_update(self, entry: TokenMetadataEntry) -> TokenMetadataEntry:
        saved = await self._store.upsert_metadata(entry)
        await self._cache.set(
            self.cache_key(saved.network, saved.contract_address), saved, self._ttl, payload=saved.to_dict()
        )
        return saved

    async def get_popular(self, network: Network | str, limit: int = 100) -> List[TokenMetadataEntry]:
        return await self._store.popular_metadata(network_key(network), limit)
