"""CoinMarketCap symbol map client, used as the token authority."""

import logging
from typing import Dict, Sequence

import aiohttp

from walletlens.clients.base import AuthorityMatch, HttpClient

logger = logging.getLogger(__name__)


def _rank(match: AuthorityMatch) -> tuple:
    """Active listings first, then the oldest (lowest) id."""
    try:
        listing_id = int(match.id)
    except ValueError:
        listing_id = float("inf")
    return (not match.is_active, listing_id)


class CoinMarketCapClient(HttpClient):
    service_name = "coinmarketcap"
    MAP_URL = "https://pro-api.coinmarketcap.com/v1/cryptocurrency/map"

    def __init__(self, api_key: str, timeout_seconds: float = 10.0, session: aiohttp.ClientSession | None = None):
        super().__init__(timeout_seconds, session)
        self._headers = {"accept": "application/json", "X-CMC_PRO_API_KEY": api_key}

    async def find_by_symbols(self, symbols: Sequence[str]) -> Dict[str, AuthorityMatch]:
        """Look symbols up in one call, keyed by upper-cased symbol.

        When several listings share a symbol the active, lowest-id one wins.
        """
        wanted = sorted({s.upper() for s in symbols if s})
        if not wanted:
            return {}

        payload = await self._request_json(
            "GET",
            self.MAP_URL,
            params={"symbol": ",".join(wanted), "listing_status": "active,inactive"},
            headers=self._headers,
        )

        matches: Dict[str, AuthorityMatch] = {}
        for row in self._expect_rows(self._expect_object(payload).get("data")):
            symbol = str(row.get("symbol", "")).upper()
            candidate = AuthorityMatch(
                id=str(row.get("id")),
                is_active=row.get("is_active") == 1,
                symbol=symbol,
                name=row.get("name") or symbol,
            )
            current = matches.get(symbol)
            if current is None or _rank(candidate) < _rank(current):
                matches[symbol] = candidate
        logger.debug(f"CoinMarketCap matched {len(matches)}/{len(wanted)} symbols")
        return matches
