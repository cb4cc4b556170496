import pytest
from unittest.mock import AsyncMock, MagicMock

from walletlens.core.enrichment import PriceEnrichmentService, recompute_totals
from walletlens.core.portfolio import (
    CategoryGroupedPortfolio,
    PortfolioService,
    PortfolioTransformer,
)
from walletlens.errors import InvalidWalletAddressError, UnsupportedNetworkError, UpstreamUnavailableError
from walletlens.networks import Network
from walletlens.providers.base import (
    Position,
    PositionDetails,
    PositionKind,
    Token,
    TokenRole,
)
from walletlens.services.pricing import PriceResult
from walletlens.services.verification import VERIFIED

from conftest import WALLET, FakeProvider


def token(address, value, role=TokenRole.GENERIC, symbol="TKN"):
    return Token(
        symbol=symbol,
        name=symbol,
        contract_address=address,
        role=role,
        balance_formatted=1.0,
        usd_price=value,
        usd_value=value,
    )


def position(position_id, kind, tokens, details=None):
    return Position(
        id=position_id,
        protocol_name="Proto",
        protocol_id="proto",
        kind=kind,
        tokens=tokens,
        details=details or PositionDetails(),
    )


def sample_positions():
    return [
        position(
            "farm",
            PositionKind.FARMING,
            [token("0x01", 100.0), token("0x02", 10.0, TokenRole.REWARD)],
            PositionDetails(staked_count=1, rewards_count=1),
        ),
        position(
            "lend",
            PositionKind.LENDING,
            [token("0x03", 1000.0, TokenRole.SUPPLIED), token("0x04", 300.0, TokenRole.BORROWED)],
        ),
        position(
            "stake",
            PositionKind.STAKED,
            [token("0x05", 50.0, TokenRole.UNDERLYING)],
            PositionDetails(staked_count=1),
        ),
        position("yield", PositionKind.YIELD, [token("0x06", 25.0, TokenRole.SUPPLIED)]),
        position("lp", PositionKind.LIQUIDITY, [token("0x07", 5.0), token("0x08", 5.0)]),
        position("claim", PositionKind.REWARD, [token("0x09", 1.0, TokenRole.REWARD)]),
        position("vest", PositionKind.VESTED, [token("0x0a", 2.0)]),
        position("misc", PositionKind.OTHER, [token("0x0b", 3.0)]),
    ]


class TestPortfolioTransformer:
    @pytest.fixture
    def transformer(self):
        return PortfolioTransformer()

    def test_positions_land_in_their_buckets(self, transformer):
        positions = [recompute_totals(p) for p in sample_positions()]

        portfolio = transformer.transform(WALLET, Network.ETHEREUM, positions, "https://logo/eth.png")

        assert [p.id for p in portfolio.farming] == ["farm"]
        assert [p.id for p in portfolio.lending] == ["lend"]
        assert [p.id for p in portfolio.staking] == ["stake"]
        assert [p.id for p in portfolio.yield_positions] == ["yield"]
        assert [p.id for p in portfolio.liquidity_pools] == ["lp"]
        assert [p.id for p in portfolio.rewards] == ["claim"]
        assert [p.id for p in portfolio.vaults] == ["vest"]
        assert [p.id for p in portfolio.other] == ["misc"]
        assert portfolio.position_count == 8
        assert portfolio.network_logo == "https://logo/eth.png"
        assert portfolio.total_value_usd == pytest.approx(110 + 700 + 50 + 25 + 10 + 1 + 2 + 3)

    def test_farming_view_splits_stake_and_rewards(self, transformer):
        positions = [recompute_totals(p) for p in sample_positions()]
        farm = transformer.transform(WALLET, Network.ETHEREUM, positions).farming[0]

        assert farm.staked_value_usd == pytest.approx(100.0)
        assert farm.rewards_value_usd == pytest.approx(10.0)
        assert [a.address for a in farm.staked_assets] == ["0x01"]
        assert [a.address for a in farm.reward_assets] == ["0x02"]

    def test_borrowed_assets_marked_as_debt(self, transformer):
        positions = [recompute_totals(p) for p in sample_positions()]
        lending = transformer.transform(WALLET, Network.ETHEREUM, positions).lending[0]

        assert lending.net_value_usd == pytest.approx(700.0)
        assert [a.is_debt for a in lending.supplied_assets] == [False]
        assert [a.is_debt for a in lending.borrowed_assets] == [True]

    def test_category_totals(self, transformer):
        positions = [recompute_totals(p) for p in sample_positions()]
        totals = transformer.transform(WALLET, Network.ETHEREUM, positions).category_totals()
        assert totals["lending"] == pytest.approx(700.0)
        assert totals["yield"] == pytest.approx(25.0)
        assert set(totals) == {
            "farming", "lending", "staking", "yield", "rewards", "vaults", "liquidity_pools", "other"
        }

    def test_summarize_drops_empty_networks(self, transformer):
        eth = CategoryGroupedPortfolio(wallet_address=WALLET, network=Network.ETHEREUM, total_value_usd=10.0)
        base = CategoryGroupedPortfolio(wallet_address=WALLET, network=Network.BASE, total_value_usd=0.0)
        polygon = CategoryGroupedPortfolio(wallet_address=WALLET, network=Network.POLYGON, total_value_usd=50.0)

        summary = transformer.summarize(WALLET, [eth, base, polygon])

        assert [p.network for p in summary.networks] == [Network.POLYGON, Network.ETHEREUM]
        assert summary.total_value_usd == pytest.approx(60.0)


class TestPortfolioService:
    @pytest.fixture
    def provider(self):
        return FakeProvider()

    @pytest.fixture
    def enrichment(self):
        verification = MagicMock()
        verification.classify_and_verify = AsyncMock(
            side_effect=lambda refs, network: {ref.address: VERIFIED for ref in refs}
        )
        pricing = MagicMock()
        pricing.fetch_prices = AsyncMock(return_value=PriceResult())
        return PriceEnrichmentService(verification, pricing)

    @pytest.fixture
    def network_metadata(self):
        repo = MagicMock()
        repo.get_logo = AsyncMock(return_value="https://logo/network.png")
        return repo

    @pytest.fixture
    def token_metadata(self):
        service = MagicMock()
        service.record_tokens = MagicMock(return_value=0)
        service.fill_missing_logos = AsyncMock()
        return service

    @pytest.fixture
    def service(self, provider, enrichment, network_metadata, token_metadata):
        return PortfolioService(provider, enrichment, network_metadata, token_metadata=token_metadata)

    async def test_get_positions(self, service, provider, token_metadata):
        provider.fetch.return_value = sample_positions()

        portfolio = await service.get_positions(WALLET, "eth")

        provider.fetch.assert_awaited_once_with(WALLET, Network.ETHEREUM)
        assert portfolio.network == Network.ETHEREUM
        assert portfolio.lending[0].total_value_usd == pytest.approx(700.0)
        assert portfolio.network_logo == "https://logo/network.png"
        assert not portfolio.is_stale
        token_metadata.record_tokens.assert_called_once()
        token_metadata.fill_missing_logos.assert_awaited_once()

    async def test_invalid_wallet(self, service, provider):
        with pytest.raises(InvalidWalletAddressError):
            await service.get_positions("not-a-wallet", Network.ETHEREUM)
        provider.fetch.assert_not_awaited()

    async def test_unsupported_network(self, service):
        with pytest.raises(UnsupportedNetworkError):
            await service.get_positions(WALLET, Network.CELO)

    async def test_unknown_network_name(self, service):
        with pytest.raises(UnsupportedNetworkError):
            await service.get_positions(WALLET, "solana")

    async def test_stale_portfolio_served_after_upstream_failure(self, service, provider):
        provider.fetch.return_value = sample_positions()
        fresh = await service.get_positions(WALLET, Network.ETHEREUM)

        provider.fetch.side_effect = UpstreamUnavailableError("fake", "HTTP 503")
        stale = await service.get_positions(WALLET, Network.ETHEREUM)

        assert stale.is_stale
        assert stale.total_value_usd == pytest.approx(fresh.total_value_usd)
        assert not fresh.is_stale

    async def test_upstream_failure_without_fallback_raises(self, service, provider):
        provider.fetch.side_effect = UpstreamUnavailableError("fake", "HTTP 503")
        with pytest.raises(UpstreamUnavailableError):
            await service.get_positions(WALLET, Network.ETHEREUM)

    async def test_multi_network_filters_empty_networks(self, service, provider):
        async def fetch(wallet, network):
            return sample_positions() if network == Network.BASE else []
        provider.fetch.side_effect = fetch

        summary = await service.get_multi_network_positions(WALLET, ["ethereum", "base", "polygon"])

        assert [p.network for p in summary.networks] == [Network.BASE]
        assert summary.total_value_usd == pytest.approx(901.0)
        assert summary.category_totals["lending"] == pytest.approx(700.0)

    async def test_multi_network_rejects_unsupported(self, service):
        with pytest.raises(UnsupportedNetworkError):
            await service.get_multi_network_positions(WALLET, [Network.ETHEREUM, Network.CELO])
