"""Upstream client interfaces and the shared aiohttp plumbing.

The pipeline depends only on the Protocols defined here. The concrete
clients in this package are thin aiohttp wrappers that return the
provider-native JSON untouched.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Protocol, Sequence

import aiohttp

from walletlens.errors import UpstreamUnavailableError
from walletlens.networks import Network

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceRequest:
    network: Network
    address: str
    symbol: str = ""


@dataclass(frozen=True)
class AuthorityMatch:
    """Authority registry hit for one symbol."""
    id: str
    is_active: bool
    symbol: str
    name: str


class ZerionPositionsClient(Protocol):
    async def fetch_positions(
        self,
        wallet_address: str,
        chain_ids: Sequence[str],
        position_filter: str = "only_complex",
    ) -> List[Dict[str, Any]]:
        ...


class MoralisPositionsClient(Protocol):
    async def fetch_positions(self, wallet_address: str, chain: str) -> List[Dict[str, Any]]:
        ...

    async def fetch_wallet_tokens(self, wallet_address: str, chain: str) -> List[Dict[str, Any]]:
        ...


class PricingClient(Protocol):
    async def fetch_prices(self, batch: Sequence[PriceRequest]) -> List[Dict[str, Any]]:
        ...


class TokenMetadataClient(Protocol):
    async def get_token_metadata(self, network: Network, address: str) -> Dict[str, Any] | None:
        ...


class AuthorityLookup(Protocol):
    async def find_by_symbols(self, symbols: Sequence[str]) -> Dict[str, AuthorityMatch]:
        ...


class HttpClient:
    """Lazily-created aiohttp session with upstream error translation."""

    service_name = "upstream"

    def __init__(self, timeout_seconds: float = 10.0, session: aiohttp.ClientSession | None = None):
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        session = self._get_session()
        try:
            async with session.request(
                method, url, params=params, json=json, headers=headers
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    logger.error(
                        f"{self.service_name} returned HTTP {response.status} for {url}: {body[:200]}"
                    )
                    raise UpstreamUnavailableError(
                        self.service_name, f"HTTP {response.status}"
                    )
                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    # HTML error pages and proxies answering with a 2xx status
                    logger.error(f"{self.service_name} returned a non-JSON body for {url}: {e}")
                    raise UpstreamUnavailableError(self.service_name, "invalid JSON response") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"{self.service_name} request to {url} failed: {e}")
            raise UpstreamUnavailableError(self.service_name, str(e) or type(e).__name__) from e

    def _expect_object(self, payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise UpstreamUnavailableError(
                self.service_name, f"expected a JSON object, got {type(payload).__name__}"
            )
        return payload

    def _expect_rows(self, rows: Any) -> List[Dict[str, Any]]:
        """A list of JSON objects; missing means empty, stray non-objects are dropped."""
        if rows is None:
            return []
        if not isinstance(rows, list):
            raise UpstreamUnavailableError(
                self.service_name, f"expected a JSON array, got {type(rows).__name__}"
            )
        return [row for row in rows if isinstance(row, dict)]
