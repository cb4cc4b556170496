"""Network display metadata (logos), cached for the life of the process."""

import logging
from typing import Dict

from walletlens.networks import Network
from walletlens.repositories.base import network_key
from walletlens.repositories.store import RegistryStore

logger = logging.getLogger(__name__)


class NetworkMetadataRepository:
    def __init__(self, store: RegistryStore):
        self._store = store
        self._logos: Dict[str, str | None] = {}

    async def get_logo(self, network: Network | str) -> str | None:
        key = network_key(network)
        if key not in self._logos:
            self._logos[key] = await self._store.load_network_logo(key)
        return self._logos[key]
