"""Verified-token registry."""

import logging
from typing import Any, Dict, List

from walletlens.repositories.base import NetworkSnapshotRepository
from walletlens.repositories.entries import VerifiedToken

logger = logging.getLogger(__name__)


class VerifiedTokenRepository(NetworkSnapshotRepository[VerifiedToken]):
    registry_name = "verified_tokens"

    async def _load_rows(self, network: str) -> List[VerifiedToken]:
        return await self._store.load_verified(network)

    def _decode(self, data: Dict[str, Any]) -> VerifiedToken:
        return VerifiedToken.from_dict(data)

    async def add(self, entry: VerifiedToken) -> None:
        await self._store.write_verified(entry)
        await self.invalidate(entry.network)
        logger.info(f"Verified {entry.symbol} ({entry.contract_address}) on {entry.network}")
