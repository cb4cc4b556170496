"""Price enrichment for aggregated positions.

Enrichment classifies every token, prices the verified ones from the
authoritative source in one batched pass, and then recomputes each position's
totals from its tokens. Provider-reported totals are never kept.

Formulas by position kind:
- lending: supplied (supplied + receipt tokens) minus borrowed
- farming / staking groups: staked value plus rewards value
- everything else: sum of token values

Plain wallet balances go through the same classify and price step via
`enrich_balances`; they have no position totals to recompute.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping

from walletlens.clients.base import PriceRequest
from walletlens.networks import Network
from walletlens.providers.base import Position, PositionKind, PriceSource, Token, TokenRole
from walletlens.services.metrics import EnrichmentTimer
from walletlens.services.pricing import PriceResult, PriceService, TokenPriceError
from walletlens.services.verification import (
    UNKNOWN,
    TokenRef,
    TokenVerificationService,
    VerificationStatus,
)

logger = logging.getLogger(__name__)

_SUPPLY_ROLES = (TokenRole.SUPPLIED, TokenRole.DEFI_TOKEN)

# Lone supplied or borrowed entries follow the lending formula too
LENDING_KINDS = (PositionKind.LENDING, PositionKind.SUPPLIED, PositionKind.BORROWED)


@dataclass
class EnrichmentResult:
    positions: List[Position]
    price_failures: List[TokenPriceError] = field(default_factory=list)


def token_value(token: Token) -> float:
    return token.usd_value or 0.0


def recompute_totals(position: Position) -> Position:
    """Derive totals and flags from the position's (priced) tokens."""
    details = position.details
    tokens = position.tokens

    if position.kind in LENDING_KINDS:
        supplied = sum(token_value(t) for t in tokens if t.role in _SUPPLY_ROLES)
        borrowed = sum(token_value(t) for t in tokens if t.role == TokenRole.BORROWED)
        details.supplied_value_usd = supplied
        details.borrowed_value_usd = borrowed
        details.net_value_usd = supplied - borrowed
        details.is_debt = any(t.role == TokenRole.BORROWED for t in tokens)
        position.total_value_usd = supplied - borrowed
    elif position.is_aggregated_rewards:
        staked = tokens[:details.staked_count]
        rewards = tokens[details.staked_count:details.staked_count + details.rewards_count]
        details.staked_value_usd = sum(token_value(t) for t in staked)
        details.rewards_value_usd = sum(token_value(t) for t in rewards)
        position.unclaimed_value_usd = details.rewards_value_usd
        position.total_value_usd = details.staked_value_usd + details.rewards_value_usd
    else:
        position.total_value_usd = sum(token_value(t) for t in tokens)

    position.has_unverified_tokens = any(not t.is_verified for t in tokens)
    position.is_disconnected_from_global_pricing = position.has_unverified_tokens
    return position


def apply_price(token: Token, status: VerificationStatus, price: float | None, proxied: bool) -> None:
    """Authoritative price for verified tokens, provider fallback otherwise."""
    token.is_verified = status.is_verified
    token.is_unlisted = status.is_unlisted

    if status.is_verified and price is not None:
        token.usd_price = price
        token.usd_value = token.balance_formatted * price
        token.price_source = PriceSource.AUTHORITATIVE
        token.is_price_proxy = proxied
        return

    # Keep whatever the provider reported; no price stays None, never zero
    if token.usd_value is None and token.usd_price is not None:
        token.usd_value = token.balance_formatted * token.usd_price
    token.price_source = PriceSource.PROVIDER_FALLBACK
    token.is_price_proxy = False


class PriceEnrichmentService:
    def __init__(self, verification: TokenVerificationService, pricing: PriceService):
        self._verification = verification
        self._pricing = pricing

    async def enrich_with_prices(self, positions: List[Position], network: Network) -> List[Position]:
        result = await self.enrich(positions, network)
        return result.positions

    async def enrich(self, positions: List[Position], network: Network) -> EnrichmentResult:
        results = await self.enrich_many({network: positions})
        return results[network]

    async def enrich_many(
        self, positions_by_network: Mapping[Network, List[Position]]
    ) -> Dict[Network, EnrichmentResult]:
        """Enrich several networks with one shared, chunked price step."""
        with EnrichmentTimer():
            failures = await self._price_tokens({
                network: [token for position in positions for token in position.tokens]
                for network, positions in positions_by_network.items()
            })
            results: Dict[Network, EnrichmentResult] = {}
            for network, positions in positions_by_network.items():
                for position in positions:
                    recompute_totals(position)
                results[network] = EnrichmentResult(positions=positions, price_failures=failures[network])
            return results

    async def enrich_balances(
        self, balances_by_network: Mapping[Network, List[Token]]
    ) -> Dict[Network, List[TokenPriceError]]:
        """Classify and price plain wallet balances in place.

        Same rules as positions: verified tokens take the authoritative price,
        everything else keeps the provider's. Returns price failures per network.
        """
        with EnrichmentTimer():
            return await self._price_tokens(balances_by_network)

    async def _price_tokens(
        self, tokens_by_network: Mapping[Network, List[Token]]
    ) -> Dict[Network, List[TokenPriceError]]:
        networks = list(tokens_by_network)
        statuses = await asyncio.gather(
            *(self._classify(tokens_by_network[n], n) for n in networks)
        )
        status_by_network = dict(zip(networks, statuses))

        requests = [
            PriceRequest(network=network, address=token.contract_address, symbol=token.symbol)
            for network in networks
            for token in self._unique_tokens(tokens_by_network[network])
            if status_by_network[network].get(token.contract_address, UNKNOWN).is_verified
        ]
        prices = await self._pricing.fetch_prices(requests) if requests else PriceResult()

        failures_by_network: Dict[Network, List[TokenPriceError]] = {}
        for network in networks:
            network_statuses = status_by_network[network]
            for token in tokens_by_network[network]:
                apply_price(
                    token,
                    network_statuses.get(token.contract_address, UNKNOWN),
                    prices.price_for(network, token.contract_address),
                    prices.is_proxied(network, token.contract_address),
                )

            failures = [f for f in prices.failures if f.network == network]
            if failures:
                logger.warning(
                    f"{len(failures)} verified tokens on {network.value} kept provider prices: "
                    + ", ".join(f"{f.symbol} ({f.error})" for f in failures[:5])
                )
            failures_by_network[network] = failures
        return failures_by_network

    async def _classify(self, tokens: List[Token], network: Network) -> Dict[str, VerificationStatus]:
        refs = [
            TokenRef(
                address=token.contract_address,
                symbol=token.symbol,
                name=token.name,
                decimals=token.decimals,
                logo=token.logo,
            )
            for token in self._unique_tokens(tokens)
        ]
        if not refs:
            return {}
        return await self._verification.classify_and_verify(refs, network)

    @staticmethod
    def _unique_tokens(tokens: List[Token]) -> List[Token]:
        seen: Dict[str, Token] = {}
        for token in tokens:
            if token.contract_address:
                seen.setdefault(token.contract_address, token)
        return list(seen.values())
