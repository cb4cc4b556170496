"""Authoritative token pricing.

Prices come from the Alchemy Prices API in batched calls, chunked so that one
request never spans more networks than the API accepts. Per-token prices are
cached briefly; cache traffic is bounded by its own semaphore so a wide
multi-network portfolio cannot exhaust the cache connection pool.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence, Set, Tuple

from walletlens.clients.base import PriceRequest, PricingClient
from walletlens.errors import WalletLensError
from walletlens.networks import ALCHEMY_NETWORK_IDS, Network, is_native_token
from walletlens.services.cache import CacheStore, DistributedCache
from walletlens.services.metrics import record_prices

logger = logging.getLogger(__name__)

PriceKey = Tuple[Network, str]

_NETWORKS_BY_SLUG = {slug: network for network, slug in ALCHEMY_NETWORK_IDS.items()}


@dataclass
class TokenPriceError:
    address: str
    symbol: str
    network: Network
    error: str


@dataclass
class PriceResult:
    prices: Dict[PriceKey, float] = field(default_factory=dict)
    failures: List[TokenPriceError] = field(default_factory=list)
    proxied: Set[PriceKey] = field(default_factory=set)  # Native coins priced via a wrapped token

    def price_for(self, network: Network, address: str) -> float | None:
        return self.prices.get((network, address.lower()))

    def is_proxied(self, network: Network, address: str) -> bool:
        return (network, address.lower()) in self.proxied

    def merge(self, other: PriceResult) -> None:
        self.prices.update(other.prices)
        self.failures.extend(other.failures)
        self.proxied.update(other.proxied)


class PriceService:
    def __init__(
        self,
        client: PricingClient,
        cache: CacheStore,
        price_ttl_seconds: float = 60.0,
        max_networks_per_batch: int = 3,
        native_price_proxies: Mapping[str, str] | None = None,
        cache_concurrency: int = 50,
    ):
        self._client = client
        self._cache = cache
        self._ttl = price_ttl_seconds
        self._max_networks = max_networks_per_batch
        self._proxies = {k.lower(): v.lower() for k, v in (native_price_proxies or {}).items()}
        self._cache_semaphore = asyncio.Semaphore(cache_concurrency)

    @staticmethod
    def cache_key(network: Network, symbol: str, address: str) -> str:
        return DistributedCache.generate_key("token_price", network.value, symbol.upper(), address.lower())

    async def fetch_prices(self, requests: Sequence[PriceRequest]) -> PriceResult:
        """Price every requested token, degrading failures instead of raising."""
        result = PriceResult()

        # (network, requested address) -> (address actually priced, symbol)
        wanted: Dict[PriceKey, Tuple[str, str]] = {}
        for request in requests:
            key = (request.network, request.address.lower())
            if key in wanted:
                continue
            lookup = request.address.lower()
            if is_native_token(lookup):
                proxy = self._proxies.get(request.network.value)
                if proxy is None:
                    result.failures.append(TokenPriceError(
                        lookup, request.symbol, request.network, "No native price proxy configured"
                    ))
                    continue
                lookup = proxy
                result.proxied.add(key)
            wanted[key] = (lookup, request.symbol)

        if not wanted:
            return result

        cached = await asyncio.gather(
            *(self._cached_price(key[0], symbol, key[1]) for key, (_, symbol) in wanted.items())
        )
        to_fetch: Dict[PriceKey, Tuple[str, str]] = {}
        for (key, target), price in zip(wanted.items(), cached):
            if price is None:
                to_fetch[key] = target
            else:
                result.prices[key] = price

        if to_fetch:
            chunks = self._chunk_by_network(to_fetch)
            logger.info(
                f"Fetching prices for {len(to_fetch)} tokens across "
                f"{len({k[0] for k in to_fetch})} networks in {len(chunks)} request(s)"
            )
            for fetched in await asyncio.gather(*(self._fetch_chunk(chunk) for chunk in chunks)):
                result.merge(fetched)
            await asyncio.gather(*(
                self._store_price(key[0], to_fetch[key][1], key[1], result.prices[key])
                for key in to_fetch if key in result.prices
            ))

        self._record(wanted, result)
        if result.failures:
            sample = ", ".join(f"{f.symbol} ({f.address}): {f.error}" for f in result.failures[:5])
            logger.warning(f"Failed to price {len(result.failures)} tokens: {sample}")
        return result

    def _chunk_by_network(
        self, tokens: Dict[PriceKey, Tuple[str, str]]
    ) -> List[Dict[PriceKey, Tuple[str, str]]]:
        networks = sorted({key[0] for key in tokens}, key=lambda n: n.value)
        chunks = []
        for start in range(0, len(networks), self._max_networks):
            members = set(networks[start:start + self._max_networks])
            chunks.append({key: value for key, value in tokens.items() if key[0] in members})
        return chunks

    async def _fetch_chunk(self, chunk: Dict[PriceKey, Tuple[str, str]]) -> PriceResult:
        result = PriceResult()
        batch = [
            PriceRequest(network=network, address=lookup, symbol=symbol)
            for (network, _), (lookup, symbol) in chunk.items()
        ]
        try:
            rows = await self._client.fetch_prices(batch)
        except WalletLensError as e:
            logger.error(f"Price batch of {len(batch)} tokens failed: {e}")
            for (network, address), (_, symbol) in chunk.items():
                result.failures.append(TokenPriceError(address, symbol, network, str(e)))
            return result

        # Several requested addresses can share one lookup (native coin and its wrapper)
        by_lookup: Dict[PriceKey, List[PriceKey]] = {}
        for key, (lookup, _) in chunk.items():
            by_lookup.setdefault((key[0], lookup), []).append(key)

        answered: Set[PriceKey] = set()
        for row in rows:
            network = _NETWORKS_BY_SLUG.get(row.get("network") or "")
            address = (row.get("address") or "").lower()
            keys = by_lookup.get((network, address)) if network else None
            if not keys:
                continue
            error = row.get("error")
            price = None if error else self._usd_price(row)
            for key in keys:
                answered.add(key)
                if price is None:
                    message = error.get("message") if isinstance(error, dict) else (error or "No USD price")
                    result.failures.append(TokenPriceError(key[1], chunk[key][1], key[0], str(message)))
                else:
                    result.prices[key] = price

        for key, (_, symbol) in chunk.items():
            if key not in answered:
                result.failures.append(TokenPriceError(key[1], symbol, key[0], "No price returned"))
        return result

    @staticmethod
    def _usd_price(row: dict) -> float | None:
        for entry in row.get("prices") or []:
            if (entry.get("currency") or "").lower() == "usd":
                try:
                    return float(entry.get("value"))
                except (TypeError, ValueError):
                    return None
        return None

    async def _cached_price(self, network: Network, symbol: str, address: str) -> float | None:
        async with self._cache_semaphore:
            value = await self._cache.get(self.cache_key(network, symbol, address))
        return float(value) if value is not None else None

    async def _store_price(self, network: Network, symbol: str, address: str, price: float) -> None:
        async with self._cache_semaphore:
            await self._cache.set(self.cache_key(network, symbol, address), price, self._ttl)

    @staticmethod
    def _record(wanted: Dict[PriceKey, Tuple[str, str]], result: PriceResult) -> None:
        failed_by_network: Dict[Network, int] = {}
        for failure in result.failures:
            failed_by_network[failure.network] = failed_by_network.get(failure.network, 0) + 1
        for network in {key[0] for key in wanted} | set(failed_by_network):
            priced = sum(1 for key in result.prices if key[0] == network)
            record_prices(network.value, priced, failed_by_network.get(network, 0))
