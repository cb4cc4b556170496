"""Plain wallet balances (the non-DeFi read path).

`WalletService` runs fetch -> classify -> price verified tokens -> transform
for the tokens a wallet simply holds. Unlisted tokens are dropped from the
result; verified tokens carry the authoritative price and anything the
authority has never heard of is already unlisted by the time it gets here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

from walletlens.core.enrichment import PriceEnrichmentService
from walletlens.core.portfolio import AssetView, normalize_wallet_address, to_asset_view
from walletlens.networks import Network, parse_network
from walletlens.providers.base import PositionProvider, Token
from walletlens.repositories.network_metadata import NetworkMetadataRepository
from walletlens.services.token_metadata import TokenMetadataService

logger = logging.getLogger(__name__)


@dataclass
class NetworkWallet:
    wallet_address: str
    network: Network
    network_logo: str | None = None
    tokens: List[AssetView] = field(default_factory=list)
    total_value_usd: float = 0.0

    @property
    def token_count(self) -> int:
        return len(self.tokens)


@dataclass
class WalletPortfolio:
    wallet_address: str
    networks: List[NetworkWallet] = field(default_factory=list)
    total_value_usd: float = 0.0
    total_tokens: int = 0


def build_network_wallet(
    wallet_address: str,
    network: Network,
    balances: Sequence[Token],
    network_logo: str | None = None,
) -> NetworkWallet:
    """Keep listed, non-empty balances, most valuable first.

    Tokens without a price stay in the list (value None sorts last) and add
    nothing to the total.
    """
    kept = [t for t in balances if not t.is_unlisted and t.balance_formatted > 0]
    kept.sort(key=lambda t: t.usd_value or 0.0, reverse=True)
    tokens = [to_asset_view(t) for t in kept]
    return NetworkWallet(
        wallet_address=wallet_address,
        network=network,
        network_logo=network_logo,
        tokens=tokens,
        total_value_usd=sum(t.usd_value or 0.0 for t in tokens),
    )


class WalletService:
    def __init__(
        self,
        provider: PositionProvider,
        enrichment: PriceEnrichmentService,
        network_metadata: NetworkMetadataRepository,
        token_metadata: TokenMetadataService | None = None,
    ):
        self._provider = provider
        self._enrichment = enrichment
        self._network_metadata = network_metadata
        self._token_metadata = token_metadata

    async def get_wallet(self, wallet_address: str, network: Network | str) -> NetworkWallet:
        wallet = normalize_wallet_address(wallet_address)
        network = parse_network(network)
        self._provider.ensure_supported(network)

        balances = await self._provider.fetch_balances(wallet, network)
        wallets = await self._build(wallet, {network: balances})
        return wallets[network]

    async def get_multi_network_wallet(
        self, wallet_address: str, networks: Sequence[Network | str]
    ) -> WalletPortfolio:
        """Balances across networks with one shared price step.

        Networks with nothing left after filtering are left out of the result.
        """
        wallet = normalize_wallet_address(wallet_address)
        resolved = list(dict.fromkeys(parse_network(n) for n in networks))
        for network in resolved:
            self._provider.ensure_supported(network)

        by_network = await self._provider.fetch_balances_multi_network(wallet, resolved)
        non_empty = {network: balances for network, balances in by_network.items() if balances}
        if not non_empty:
            logger.info(f"No balances found for {wallet} across {len(resolved)} networks")
            return WalletPortfolio(wallet_address=wallet)

        wallets = [w for w in (await self._build(wallet, non_empty)).values() if w.tokens]
        wallets.sort(key=lambda w: w.total_value_usd, reverse=True)
        portfolio = WalletPortfolio(
            wallet_address=wallet,
            networks=wallets,
            total_value_usd=sum(w.total_value_usd for w in wallets),
            total_tokens=sum(w.token_count for w in wallets),
        )
        logger.info(
            f"Wallet {wallet}: {portfolio.total_tokens} tokens across {len(wallets)} networks "
            f"worth ${portfolio.total_value_usd:,.2f}"
        )
        return portfolio

    async def _build(
        self, wallet: str, balances_by_network: Mapping[Network, List[Token]]
    ) -> Dict[Network, NetworkWallet]:
        await self._enrichment.enrich_balances(balances_by_network)

        result: Dict[Network, NetworkWallet] = {}
        for network, balances in balances_by_network.items():
            if self._token_metadata is not None:
                self._token_metadata.record_tokens(network, balances)
                await self._token_metadata.fill_missing_logos(network, balances)
            logo = await self._network_metadata.get_logo(network)
            result[network] = build_network_wallet(wallet, network, balances, logo)
        return result
