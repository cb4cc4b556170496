"""Category-grouped portfolio views.

This module turns enriched positions into the read model callers consume:
one bucket per position category, per-network totals, and a multi-network
summary. `PortfolioService` runs the whole pipeline for a wallet:
fetch -> aggregate -> verify -> price -> transform.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Sequence

from web3 import Web3

from walletlens.core.enrichment import LENDING_KINDS, PriceEnrichmentService
from walletlens.errors import InvalidWalletAddressError, UpstreamUnavailableError
from walletlens.networks import Network, parse_network
from walletlens.providers.base import (
    AccountData,
    Position,
    PositionKind,
    PositionProvider,
    PriceSource,
    ProjectedEarnings,
    Token,
    TokenRole,
)
from walletlens.repositories.network_metadata import NetworkMetadataRepository
from walletlens.services.cache import TTLCache
from walletlens.services.token_metadata import TokenMetadataService

logger = logging.getLogger(__name__)


@dataclass
class AssetView:
    """A token as shown to callers, with its trust and pricing flags."""
    symbol: str
    name: str
    address: str
    balance: float
    usd_price: float | None
    usd_value: float | None
    logo: str | None
    is_verified: bool
    is_unlisted: bool
    price_source: PriceSource
    is_price_proxy: bool = False
    is_debt: bool = False


@dataclass
class PositionView:
    """Fields shared by every bucket entry."""
    id: str
    protocol: str
    protocol_id: str
    protocol_url: str | None
    protocol_logo: str | None
    name: str
    total_value_usd: float
    has_unverified_tokens: bool
    is_disconnected_from_global_pricing: bool


@dataclass
class FarmingPositionView(PositionView):
    pool_address: str | None = None
    staked_value_usd: float = 0.0
    rewards_value_usd: float = 0.0
    staked_assets: List[AssetView] = field(default_factory=list)
    reward_assets: List[AssetView] = field(default_factory=list)
    apy: float | None = None


@dataclass
class StakingPositionView(PositionView):
    staked_value_usd: float = 0.0
    rewards_value_usd: float = 0.0
    staked_assets: List[AssetView] = field(default_factory=list)
    rewards: List[AssetView] = field(default_factory=list)
    apy: float | None = None


@dataclass
class LendingPositionView(PositionView):
    supplied_value_usd: float = 0.0
    borrowed_value_usd: float = 0.0
    net_value_usd: float = 0.0
    supplied_assets: List[AssetView] = field(default_factory=list)
    borrowed_assets: List[AssetView] = field(default_factory=list)
    health_factor: float | None = None
    net_apy: float | None = None
    projected_earnings: ProjectedEarnings | None = None


@dataclass
class YieldPositionView(PositionView):
    deposited_assets: List[AssetView] = field(default_factory=list)
    apy: float | None = None


@dataclass
class SimplePositionView(PositionView):
    """Liquidity, reward, vault and uncategorised positions."""
    kind: PositionKind = PositionKind.OTHER
    assets: List[AssetView] = field(default_factory=list)
    pool_address: str | None = None


@dataclass
class CategoryGroupedPortfolio:
    wallet_address: str
    network: Network
    network_logo: str | None = None
    farming: List[FarmingPositionView] = field(default_factory=list)
    lending: List[LendingPositionView] = field(default_factory=list)
    staking: List[StakingPositionView] = field(default_factory=list)
    yield_positions: List[YieldPositionView] = field(default_factory=list)
    rewards: List[SimplePositionView] = field(default_factory=list)
    vaults: List[SimplePositionView] = field(default_factory=list)
    liquidity_pools: List[SimplePositionView] = field(default_factory=list)
    other: List[SimplePositionView] = field(default_factory=list)
    total_value_usd: float = 0.0
    has_unverified_tokens: bool = False
    is_stale: bool = False          # Served from the fallback copy after an upstream failure

    def buckets(self) -> Dict[str, List[PositionView]]:
        return {
            "farming": self.farming,
            "lending": self.lending,
            "staking": self.staking,
            "yield": self.yield_positions,
            "rewards": self.rewards,
            "vaults": self.vaults,
            "liquidity_pools": self.liquidity_pools,
            "other": self.other,
        }

    @property
    def position_count(self) -> int:
        return sum(len(items) for items in self.buckets().values())

    def category_totals(self) -> Dict[str, float]:
        return {
            name: sum(item.total_value_usd for item in items)
            for name, items in self.buckets().items()
        }


@dataclass
class AggregatedPortfolio:
    wallet_address: str
    networks: List[CategoryGroupedPortfolio] = field(default_factory=list)
    total_value_usd: float = 0.0
    category_totals: Dict[str, float] = field(default_factory=dict)
    has_unverified_tokens: bool = False


def to_asset_view(token: Token, is_debt: bool = False) -> AssetView:
    return AssetView(
        symbol=token.symbol,
        name=token.name,
        address=token.contract_address,
        balance=token.balance_formatted,
        usd_price=token.usd_price,
        usd_value=token.usd_value,
        logo=token.logo,
        is_verified=token.is_verified,
        is_unlisted=token.is_unlisted,
        price_source=token.price_source,
        is_price_proxy=token.is_price_proxy,
        is_debt=is_debt,
    )


def normalize_wallet_address(wallet_address: str) -> str:
    if not wallet_address or not Web3.is_address(wallet_address.lower()):
        raise InvalidWalletAddressError(wallet_address)
    return wallet_address.lower()


class PortfolioTransformer:
    """Maps enriched positions onto category buckets."""

    VAULT_KINDS = (PositionKind.VESTED, PositionKind.LOCKED)

    def transform(
        self,
        wallet_address: str,
        network: Network,
        positions: Sequence[Position],
        network_logo: str | None = None,
    ) -> CategoryGroupedPortfolio:
        portfolio = CategoryGroupedPortfolio(
            wallet_address=wallet_address, network=network, network_logo=network_logo
        )

        for position in positions:
            kind = position.kind
            if kind == PositionKind.FARMING:
                portfolio.farming.append(self._farming(position))
            elif kind in LENDING_KINDS:
                portfolio.lending.append(self._lending(position))
            elif kind == PositionKind.YIELD:
                portfolio.yield_positions.append(self._yield(position))
            elif kind == PositionKind.STAKED:
                portfolio.staking.append(self._staking(position))
            elif kind == PositionKind.LIQUIDITY:
                portfolio.liquidity_pools.append(self._simple(position))
            elif kind == PositionKind.REWARD:
                portfolio.rewards.append(self._simple(position))
            elif kind in self.VAULT_KINDS:
                portfolio.vaults.append(self._simple(position))
            else:
                portfolio.other.append(self._simple(position))

        portfolio.total_value_usd = sum(p.total_value_usd for p in positions)
        portfolio.has_unverified_tokens = any(p.has_unverified_tokens for p in positions)

        logger.debug(
            f"Portfolio for {wallet_address} on {network.value}: {len(portfolio.farming)} farming, "
            f"{len(portfolio.lending)} lending, {len(portfolio.staking)} staking, "
            f"{len(portfolio.yield_positions)} yield"
        )
        return portfolio

    def summarize(
        self, wallet_address: str, portfolios: Sequence[CategoryGroupedPortfolio]
    ) -> AggregatedPortfolio:
        """Merge per-network portfolios, leaving out networks worth nothing."""
        kept = [p for p in portfolios if p.total_value_usd != 0]
        totals: Dict[str, float] = {}
        for portfolio in kept:
            for name, value in portfolio.category_totals().items():
                totals[name] = totals.get(name, 0.0) + value
        kept.sort(key=lambda p: p.total_value_usd, reverse=True)
        return AggregatedPortfolio(
            wallet_address=wallet_address,
            networks=kept,
            total_value_usd=sum(p.total_value_usd for p in kept),
            category_totals=totals,
            has_unverified_tokens=any(p.has_unverified_tokens for p in kept),
        )

    @staticmethod
    def _base(position: Position) -> dict:
        return {
            "id": position.id,
            "protocol": position.protocol_name,
            "protocol_id": position.protocol_id,
            "protocol_url": position.protocol_url,
            "protocol_logo": position.protocol_logo,
            "name": position.name,
            "total_value_usd": position.total_value_usd,
            "has_unverified_tokens": position.has_unverified_tokens,
            "is_disconnected_from_global_pricing": position.is_disconnected_from_global_pricing,
        }

    @staticmethod
    def _split_staked(position: Position) -> tuple[List[AssetView], List[AssetView]]:
        details = position.details
        if position.is_aggregated_rewards:
            staked = position.tokens[:details.staked_count]
            rewards = position.tokens[details.staked_count:details.staked_count + details.rewards_count]
        else:
            staked = [t for t in position.tokens if t.role != TokenRole.REWARD]
            rewards = [t for t in position.tokens if t.role == TokenRole.REWARD]
        return [to_asset_view(t) for t in staked], [to_asset_view(t) for t in rewards]

    def _farming(self, position: Position) -> FarmingPositionView:
        staked, rewards = self._split_staked(position)
        return FarmingPositionView(
            **self._base(position),
            pool_address=position.pool_address,
            staked_value_usd=position.details.staked_value_usd,
            rewards_value_usd=position.details.rewards_value_usd,
            staked_assets=staked,
            reward_assets=rewards,
            apy=position.apy,
        )

    def _staking(self, position: Position) -> StakingPositionView:
        staked, rewards = self._split_staked(position)
        return StakingPositionView(
            **self._base(position),
            staked_value_usd=position.details.staked_value_usd,
            rewards_value_usd=position.details.rewards_value_usd,
            staked_assets=staked,
            rewards=rewards,
            apy=position.apy,
        )

    def _lending(self, position: Position) -> LendingPositionView:
        details = position.details
        account: AccountData = position.account_data or AccountData()
        supplied = [t for t in position.tokens if t.role != TokenRole.BORROWED]
        borrowed = [t for t in position.tokens if t.role == TokenRole.BORROWED]
        return LendingPositionView(
            **self._base(position),
            supplied_value_usd=details.supplied_value_usd,
            borrowed_value_usd=details.borrowed_value_usd,
            net_value_usd=details.net_value_usd,
            supplied_assets=[to_asset_view(t) for t in supplied],
            borrowed_assets=[to_asset_view(t, is_debt=True) for t in borrowed],
            health_factor=account.health_factor,
            net_apy=account.net_apy,
            projected_earnings=position.projected_earnings,
        )

    def _yield(self, position: Position) -> YieldPositionView:
        return YieldPositionView(
            **self._base(position),
            deposited_assets=[to_asset_view(t) for t in position.tokens],
            apy=position.apy,
        )

    def _simple(self, position: Position) -> SimplePositionView:
        return SimplePositionView(
            **self._base(position),
            kind=position.kind,
            assets=[to_asset_view(t, is_debt=t.role == TokenRole.BORROWED) for t in position.tokens],
            pool_address=position.pool_address,
        )


class PortfolioService:
    """Runs the DeFi pipeline for a wallet on one or many networks."""

    def __init__(
        self,
        provider: PositionProvider,
        enrichment: PriceEnrichmentService,
        network_metadata: NetworkMetadataRepository,
        token_metadata: TokenMetadataService | None = None,
        transformer: PortfolioTransformer | None = None,
        fallback_ttl_seconds: float = 180.0,
    ):
        self._provider = provider
        self._enrichment = enrichment
        self._network_metadata = network_metadata
        self._token_metadata = token_metadata
        self._transformer = transformer or PortfolioTransformer()
        # Last good result per (wallet, network), served only when the provider fails
        self._last_good: TTLCache[CategoryGroupedPortfolio] = TTLCache(fallback_ttl_seconds)

    async def get_positions(self, wallet_address: str, network: Network | str) -> CategoryGroupedPortfolio:
        wallet = normalize_wallet_address(wallet_address)
        network = parse_network(network)
        self._provider.ensure_supported(network)

        try:
            positions = await self._provider.fetch_positions(wallet, network)
        except UpstreamUnavailableError as e:
            return self._fallback(wallet, network, e)

        result = await self._enrichment.enrich(positions, network)
        portfolio = await self._build(wallet, network, result.positions)
        self._last_good.set(self._fallback_key(wallet, network), portfolio)
        return portfolio

    async def get_multi_network_positions(
        self, wallet_address: str, networks: Sequence[Network | str]
    ) -> AggregatedPortfolio:
        wallet = normalize_wallet_address(wallet_address)
        resolved = list(dict.fromkeys(parse_network(n) for n in networks))
        for network in resolved:
            self._provider.ensure_supported(network)

        try:
            by_network = await self._provider.fetch_positions_multi_network(wallet, resolved)
        except UpstreamUnavailableError as e:
            portfolios = [self._fallback(wallet, network, e) for network in resolved]
            return self._transformer.summarize(wallet, portfolios)

        enriched = await self._enrichment.enrich_many(by_network)
        portfolios = await asyncio.gather(
            *(self._build(wallet, network, enriched[network].positions) for network in by_network)
        )
        for portfolio in portfolios:
            self._last_good.set(self._fallback_key(wallet, portfolio.network), portfolio)
        return self._transformer.summarize(wallet, portfolios)

    async def _build(
        self, wallet: str, network: Network, positions: List[Position]
    ) -> CategoryGroupedPortfolio:
        if self._token_metadata is not None:
            tokens = [t for p in positions for t in p.tokens]
            self._token_metadata.record_tokens(network, tokens)
            await self._token_metadata.fill_missing_logos(network, tokens)
        logo = await self._network_metadata.get_logo(network)
        return self._transformer.transform(wallet, network, positions, logo)

    def _fallback(
        self, wallet: str, network: Network, error: UpstreamUnavailableError
    ) -> CategoryGroupedPortfolio:
        cached = self._last_good.get(self._fallback_key(wallet, network))
        if cached is None:
            logger.error(f"No fallback portfolio for {wallet} on {network.value}: {error}")
            raise error
        logger.warning(f"Serving cached portfolio for {wallet} on {network.value} after upstream failure: {error}")
        return replace(cached, is_stale=True)

    @staticmethod
    def _fallback_key(wallet: str, network: Network) -> str:
        return f"{network.value}:{wallet}"
