"""Token metadata lookups with background persistence.

Metadata comes from the registry first and from the upstream metadata API
second. Anything learned upstream, or seen in provider payloads, is handed to
the write queue instead of being written on the request path.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List

from walletlens.clients.base import TokenMetadataClient
from walletlens.errors import WalletLensError
from walletlens.networks import Network
from walletlens.providers.base import Token
from walletlens.repositories.base import network_key
from walletlens.repositories.entries import TokenMetadataEntry
from walletlens.repositories.metadata import TokenMetadataRepository
from walletlens.services.metrics import record_metadata_timeout
from walletlens.services.write_queue import TokenMetadataEvent, TokenMetadataQueue

logger = logging.getLogger(__name__)


class TokenMetadataService:
    """Registry-first token metadata with a bounded upstream fan-out.

    Upstream fetches share one semaphore (the bulkhead) and every batch runs
    under a hard timeout of its own, so one slow upstream cannot hold a whole
    portfolio request hostage.
    """

    def __init__(
        self,
        repository: TokenMetadataRepository,
        queue: TokenMetadataQueue,
        client: TokenMetadataClient | None = None,
        max_concurrency: int = 10,
        fetch_timeout_seconds: float = 30.0,
    ):
        self._repository = repository
        self._queue = queue
        self._client = client
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._timeout = fetch_timeout_seconds

    async def get_metadata(self, network: Network, address: str) -> TokenMetadataEntry | None:
        found = await self.get_metadata_batch(network, [address])
        return found.get(address.lower())

    async def get_metadata_batch(
        self, network: Network, addresses: Iterable[str]
    ) -> Dict[str, TokenMetadataEntry]:
        """Metadata for many tokens, keyed by lowercased address.

        Returns whatever was found when the timeout expires; missing entries
        are simply absent.
        """
        wanted = list({a.lower() for a in addresses})
        result = await self._repository.get_many(network, wanted)
        missing = [a for a in wanted if a not in result]
        if not missing or self._client is None:
            return result

        tasks = [asyncio.create_task(self._fetch_one(network, address)) for address in missing]
        try:
            done, pending = await asyncio.wait(tasks, timeout=self._timeout)
        finally:
            # Also covers cancellation of the caller
            for task in tasks:
                if not task.done():
                    task.cancel()

        if pending:
            logger.warning(
                f"Metadata fetch for {network.value} timed out after {self._timeout}s: "
                f"{len(done)}/{len(tasks)} tokens completed, returning partial results"
            )
            record_metadata_timeout(network.value)
            await asyncio.gather(*pending, return_exceptions=True)

        for task in done:
            entry = task.result()
            if entry is not None:
                result[entry.contract_address] = entry
        return result

    async def _fetch_one(self, network: Network, address: str) -> TokenMetadataEntry | None:
        async with self._semaphore:
            try:
                raw = await self._client.get_token_metadata(network, address)
            except WalletLensError as e:
                logger.warning(f"Metadata fetch failed for {address} on {network.value}: {e}")
                return None

        if not raw:
            return None
        entry = TokenMetadataEntry(
            network=network_key(network),
            contract_address=address,
            symbol=raw.get("symbol"),
            name=raw.get("name"),
            decimals=raw.get("decimals"),
            logo_url=raw.get("logo"),
            source="alchemy",
        )
        self._queue.enqueue(TokenMetadataEvent(
            address=address,
            network=entry.network,
            symbol=entry.symbol,
            name=entry.name,
            decimals=entry.decimals,
            logo_url=entry.logo_url,
            source=entry.source,
        ))
        return entry

    def record_tokens(self, network: Network, tokens: Iterable[Token]) -> int:
        """Queue provider-reported metadata for persistence; never blocks."""
        seen: set[str] = set()
        queued = 0
        for token in tokens:
            if not token.contract_address or token.contract_address in seen:
                continue
            seen.add(token.contract_address)
            if self._queue.enqueue(TokenMetadataEvent(
                address=token.contract_address,
                network=network_key(network),
                symbol=token.symbol or None,
                name=token.name or None,
                decimals=token.decimals,
                logo_url=token.logo,
            )):
                queued += 1
        return queued

    async def fill_missing_logos(self, network: Network, tokens: List[Token]) -> None:
        """Give tokens without a logo the one on record, if any."""
        bare = [t for t in tokens if not t.logo and t.contract_address]
        if not bare:
            return
        found = await self.get_metadata_batch(network, [t.contract_address for t in bare])
        for token in bare:
            entry = found.get(token.contract_address)
            if entry is not None and entry.logo_url:
                token.logo = entry.logo_url
