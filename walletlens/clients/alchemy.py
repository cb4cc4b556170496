"""Alchemy Prices API and token metadata client."""

from typing import Any, Dict, List, Sequence

import aiohttp

from walletlens.clients.base import HttpClient, PriceRequest
from walletlens.errors import UnsupportedNetworkError
from walletlens.networks import ALCHEMY_NETWORK_IDS, Network


class AlchemyClient(HttpClient):
    service_name = "alchemy"
    PRICES_URL = "https://api.g.alchemy.com/prices/v1/{api_key}/tokens/by-address"
    RPC_URL = "https://{network}.g.alchemy.com/v2/{api_key}"

    def __init__(self, api_key: str, timeout_seconds: float = 10.0, session: aiohttp.ClientSession | None = None):
        super().__init__(timeout_seconds, session)
        self._api_key = api_key

    @staticmethod
    def network_id(network: Network) -> str:
        try:
            return ALCHEMY_NETWORK_IDS[network]
        except KeyError:
            raise UnsupportedNetworkError(network.value, "alchemy") from None

    async def fetch_prices(self, batch: Sequence[PriceRequest]) -> List[Dict[str, Any]]:
        """Return the raw `data` rows: {network, address, prices[], error}."""
        body = {
            "addresses": [
                {"network": self.network_id(item.network), "address": item.address}
                for item in batch
            ]
        }
        payload = await self._request_json(
            "POST", self.PRICES_URL.format(api_key=self._api_key), json=body
        )
        return self._expect_rows(self._expect_object(payload).get("data"))

    async def get_token_metadata(self, network: Network, address: str) -> Dict[str, Any] | None:
        url = self.RPC_URL.format(network=self.network_id(network), api_key=self._api_key)
        payload = await self._request_json(
            "POST",
            url,
            json={
                "jsonrpc": "2.0",
                "id": 1,
                "method": "alchemy_getTokenMetadata",
                "params": [address],
            },
        )
        result = self._expect_object(payload).get("result")
        return result if isinstance(result, dict) else None
