"""Base position provider interface and data models.

This module defines the canonical DeFi position model shared by every
upstream provider, and the abstract interface each provider adapter
implements. Adapters own their grouping strategy; only the output shape is
shared. Plain wallet balances reuse `Token` with the generic role.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Sequence

from walletlens.errors import UnsupportedNetworkError
from walletlens.networks import Network


class PositionKind(str, Enum):
    SUPPLIED = "supplied"
    BORROWED = "borrowed"
    STAKED = "staked"
    FARMING = "farming"
    YIELD = "yield"
    LIQUIDITY = "liquidity"
    REWARD = "reward"
    VESTED = "vested"
    LOCKED = "locked"
    LENDING = "lending"       # Aggregated supplied + borrowed group
    OTHER = "other"


class PositionModule(str, Enum):
    FARMING = "farming"
    LENDING = "lending"
    STAKING = "staking"
    LIQUIDITY = "liquidity"
    YIELD = "yield"
    OTHER = "other"


class TokenRole(str, Enum):
    SUPPLIED = "supplied"
    BORROWED = "borrowed"
    REWARD = "reward"
    UNDERLYING = "underlying"
    DEFI_TOKEN = "defi_token"  # Receipt token (aToken, cToken, LP share)
    GENERIC = "generic"


class PriceSource(str, Enum):
    AUTHORITATIVE = "authoritative"
    PROVIDER_FALLBACK = "provider_fallback"


@dataclass
class Token:
    """One token inside a position, or one plain wallet balance."""
    symbol: str
    name: str
    contract_address: str
    decimals: int = 18
    role: TokenRole = TokenRole.GENERIC
    balance: str = "0"                   # Raw integer amount
    balance_formatted: float = 0.0       # Human amount (balance / 10**decimals)
    usd_price: float | None = None
    usd_value: float | None = None       # None means "no price", not zero
    logo: str | None = None
    is_verified: bool = False
    is_unlisted: bool = False
    price_source: PriceSource = PriceSource.PROVIDER_FALLBACK
    is_price_proxy: bool = False         # Priced through a wrapped stand-in

    def __post_init__(self):
        self.contract_address = (self.contract_address or "").lower()


@dataclass
class PositionDetails:
    staked_value_usd: float = 0.0
    rewards_value_usd: float = 0.0
    staked_count: int = 0
    rewards_count: int = 0
    supplied_value_usd: float = 0.0
    borrowed_value_usd: float = 0.0
    net_value_usd: float = 0.0
    market: str | None = None
    is_debt: bool = False
    apy: float | None = None


@dataclass
class AccountData:
    health_factor: float | None = None
    net_apy: float | None = None


@dataclass
class ProjectedEarnings:
    daily: float = 0.0
    weekly: float = 0.0
    monthly: float = 0.0
    yearly: float = 0.0

    def __add__(self, other: ProjectedEarnings) -> ProjectedEarnings:
        return ProjectedEarnings(
            daily=self.daily + other.daily,
            weekly=self.weekly + other.weekly,
            monthly=self.monthly + other.monthly,
            yearly=self.yearly + other.yearly,
        )


@dataclass
class Position:
    """One logical DeFi holding after provider-specific aggregation."""
    id: str
    protocol_name: str
    protocol_id: str
    kind: PositionKind
    module: PositionModule = PositionModule.OTHER
    name: str = ""
    protocol_url: str | None = None
    protocol_logo: str | None = None
    pool_address: str | None = None
    group_id: str | None = None
    apy: float | None = None
    tokens: List[Token] = field(default_factory=list)
    details: PositionDetails = field(default_factory=PositionDetails)
    account_data: AccountData | None = None
    projected_earnings: ProjectedEarnings | None = None
    total_value_usd: float = 0.0          # Derived; recomputed by enrichment
    unclaimed_value_usd: float = 0.0
    has_unverified_tokens: bool = False
    is_disconnected_from_global_pricing: bool = False

    @property
    def is_aggregated_rewards(self) -> bool:
        """Staked-then-reward token layout (farming and staking groups)."""
        return self.kind in (PositionKind.FARMING, PositionKind.STAKED) and (
            self.details.staked_count + self.details.rewards_count == len(self.tokens)
            and self.details.staked_count > 0
        )


class PositionProvider(ABC):
    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name (e.g., 'zerion')."""
        pass

    @property
    @abstractmethod
    def supported_networks(self) -> FrozenSet[Network]:
        """Networks this provider can serve."""
        pass

    @abstractmethod
    async def fetch_positions(self, wallet_address: str, network: Network) -> List[Position]:
        """Fetch and aggregate positions for one network."""
        pass

    async def fetch_positions_multi_network(
        self, wallet_address: str, networks: Sequence[Network]
    ) -> Dict[Network, List[Position]]:
        """Fetch positions for several networks.

        The default runs one fetch per network concurrently. Providers with a
        native multi-chain endpoint override this.
        """
        for network in networks:
            self.ensure_supported(network)
        results = await asyncio.gather(
            *(self.fetch_positions(wallet_address, network) for network in networks)
        )
        return dict(zip(networks, results))

    @abstractmethod
    async def fetch_balances(self, wallet_address: str, network: Network) -> List[Token]:
        """Fetch plain (non-DeFi) token balances held by the wallet on one network."""
        pass

    async def fetch_balances_multi_network(
        self, wallet_address: str, networks: Sequence[Network]
    ) -> Dict[Network, List[Token]]:
        for network in networks:
            self.ensure_supported(network)
        results = await asyncio.gather(
            *(self.fetch_balances(wallet_address, network) for network in networks)
        )
        return dict(zip(networks, results))

    def supports(self, network: Network) -> bool:
        return network in self.supported_networks

    def ensure_supported(self, network: Network) -> None:
        if not self.supports(network):
            raise UnsupportedNetworkError(network.value, self.name)
