"""Zerion wallet positions API client."""

import logging
from typing import Any, Dict, List, Sequence

import aiohttp

from walletlens.clients.base import HttpClient

logger = logging.getLogger(__name__)


class ZerionClient(HttpClient):
    """Fetches wallet positions from Zerion's JSON:API endpoint.

    `only_complex` returns DeFi positions, `only_simple` plain wallet balances.
    """

    service_name = "zerion"
    BASE_URL = "https://api.zerion.io/v1"
    MAX_PAGES = 10

    def __init__(self, api_key: str, timeout_seconds: float = 10.0, session: aiohttp.ClientSession | None = None):
        super().__init__(timeout_seconds, session)
        self._headers = {
            "accept": "application/json",
            "authorization": aiohttp.BasicAuth(api_key, "").encode(),
        }

    async def fetch_positions(
        self,
        wallet_address: str,
        chain_ids: Sequence[str],
        position_filter: str = "only_complex",
    ) -> List[Dict[str, Any]]:
        url = f"{self.BASE_URL}/wallets/{wallet_address}/positions/"
        params = {
            "filter[positions]": position_filter,
            "filter[trash]": "only_non_trash",
            "filter[chain_ids]": ",".join(chain_ids),
            "currency": "usd",
            "sort": "value",
        }

        rows: List[Dict[str, Any]] = []
        for _ in range(self.MAX_PAGES):
            payload = self._expect_object(
                await self._request_json("GET", url, params=params, headers=self._headers)
            )
            rows.extend(self._expect_rows(payload.get("data")))
            next_url = (payload.get("links") or {}).get("next")
            if not next_url:
                break
            # The next link already carries every query parameter
            url, params = next_url, None
        else:
            logger.warning(f"Zerion pagination stopped after {self.MAX_PAGES} pages for {wallet_address}")

        return rows
