"""Moralis DeFi positions and wallet token balances client."""

import logging
from typing import Any, Dict, List

import aiohttp

from walletlens.clients.base import HttpClient

logger = logging.getLogger(__name__)


class MoralisClient(HttpClient):
    service_name = "moralis"
    BASE_URL = "https://deep-index.moralis.io/api/v2.2"
    MAX_PAGES = 10

    def __init__(self, api_key: str, timeout_seconds: float = 10.0, session: aiohttp.ClientSession | None = None):
        super().__init__(timeout_seconds, session)
        self._headers = {"accept": "application/json", "X-API-Key": api_key}

    async def fetch_positions(self, wallet_address: str, chain: str) -> List[Dict[str, Any]]:
        url = f"{self.BASE_URL}/wallets/{wallet_address}/defi/positions"
        payload = await self._request_json(
            "GET", url, params={"chain": chain}, headers=self._headers
        )
        # The endpoint returns a bare list; older versions wrap it in "result"
        if isinstance(payload, dict):
            return self._expect_rows(payload.get("result"))
        return self._expect_rows(payload)

    async def fetch_wallet_tokens(self, wallet_address: str, chain: str) -> List[Dict[str, Any]]:
        """ERC20 and native balances, following the cursor across pages."""
        url = f"{self.BASE_URL}/wallets/{wallet_address}/tokens"
        params: Dict[str, Any] = {"chain": chain, "exclude_spam": "true"}

        rows: List[Dict[str, Any]] = []
        for _ in range(self.MAX_PAGES):
            payload = self._expect_object(
                await self._request_json("GET", url, params=params, headers=self._headers)
            )
            rows.extend(self._expect_rows(payload.get("result")))
            cursor = payload.get("cursor")
            if not cursor:
                break
            params = {**params, "cursor": cursor}
        else:
            logger.warning(f"Moralis token pagination stopped after {self.MAX_PAGES} pages for {wallet_address}")

        return rows
