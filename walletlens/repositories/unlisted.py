"""Unlisted-token registry.

Unlisted tokens are re-checked over time; adding a token that is already
unlisted records another check instead of creating a duplicate.
"""

import logging
from typing import Any, Dict, List

from walletlens.repositories.base import NetworkSnapshotRepository, network_key
from walletlens.repositories.entries import UnlistedToken

logger = logging.getLogger(__name__)


class UnlistedTokenRepository(NetworkSnapshotRepository[UnlistedToken]):
    registry_name = "unlisted_tokens"

    async def _load_rows(self, network: str) -> List[UnlistedToken]:
        return await self._store.load_unlisted(network)

    def _decode(self, data: Dict[str, Any]) -> UnlistedToken:
        return UnlistedToken.from_dict(data)

    async def add(self, entry: UnlistedToken) -> bool:
        """Unlist a token; False when it is already verified and nothing changed."""
        added = await self._store.write_unlisted(entry)
        if not added:
            logger.info(
                f"Not unlisting {entry.symbol} ({entry.contract_address}) on {entry.network}: already verified"
            )
            return False
        await self.invalidate(entry.network)
        logger.debug(f"Unlisted {entry.symbol} ({entry.contract_address}) on {entry.network}: {entry.reason}")
        return True

    async def record_check(self, network, address: str) -> None:
        key = network_key(network)
        await self._store.record_unlisted_check(key, address)
        await self.invalidate(key)
