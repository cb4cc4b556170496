import pytest
from unittest.mock import AsyncMock

from walletlens.clients.alchemy import AlchemyClient
from walletlens.clients.base import PriceRequest
from walletlens.errors import UpstreamUnavailableError
from walletlens.networks import ALCHEMY_NETWORK_IDS, Network
from walletlens.services.pricing import PriceResult, PriceService, TokenPriceError

WETH = "0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2"
NATIVE = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"


def price_row(network, address, value):
    return {
        "network": ALCHEMY_NETWORK_IDS[network],
        "address": address,
        "prices": [{"currency": "usd", "value": str(value)}],
        "error": None,
    }


def echo_prices(price=1.0):
    """Client stub answering every requested token with the same price."""
    async def fetch(batch):
        return [price_row(r.network, r.address, price) for r in batch]
    return AsyncMock(side_effect=fetch)


class TestPriceResult:
    def test_price_for_is_case_insensitive(self):
        result = PriceResult(prices={(Network.ETHEREUM, "0xabc"): 2.0})
        assert result.price_for(Network.ETHEREUM, "0xABC") == 2.0
        assert result.price_for(Network.BASE, "0xabc") is None

    def test_merge(self):
        a = PriceResult(prices={(Network.ETHEREUM, "0x1"): 1.0})
        b = PriceResult(
            prices={(Network.BASE, "0x2"): 2.0},
            failures=[TokenPriceError("0x3", "X", Network.BASE, "boom")],
            proxied={(Network.BASE, "0x2")},
        )
        a.merge(b)
        assert len(a.prices) == 2
        assert len(a.failures) == 1
        assert (Network.BASE, "0x2") in a.proxied


class TestPriceService:
    @pytest.fixture
    def client(self):
        client = AsyncMock()
        client.fetch_prices = echo_prices()
        return client

    @pytest.fixture
    def service(self, client, cache):
        return PriceService(
            client,
            cache,
            price_ttl_seconds=60,
            max_networks_per_batch=3,
            native_price_proxies={"ethereum": WETH},
        )

    async def test_prices_tokens(self, service, client):
        result = await service.fetch_prices([PriceRequest(Network.ETHEREUM, "0xABC", "ABC")])

        assert result.price_for(Network.ETHEREUM, "0xabc") == 1.0
        assert result.failures == []
        client.fetch_prices.assert_awaited_once()

    async def test_chunks_by_network_count(self, service, client):
        networks = [Network.ETHEREUM, Network.POLYGON, Network.ARBITRUM, Network.OPTIMISM, Network.BASE]
        requests = [PriceRequest(n, f"0x{i:040x}", "TKN") for i, n in enumerate(networks)]

        result = await service.fetch_prices(requests)

        assert client.fetch_prices.await_count == 2
        for call in client.fetch_prices.await_args_list:
            batch = call.args[0]
            assert len({r.network for r in batch}) <= 3
        assert len(result.prices) == 5

    async def test_failed_chunk_fails_only_its_tokens(self, client, cache):
        async def fetch(batch):
            if any(r.network == Network.POLYGON for r in batch):
                raise UpstreamUnavailableError("alchemy", "HTTP 500")
            return [price_row(r.network, r.address, 3.0) for r in batch]
        client.fetch_prices = AsyncMock(side_effect=fetch)
        service = PriceService(client, cache, max_networks_per_batch=1)

        result = await service.fetch_prices([
            PriceRequest(Network.ETHEREUM, "0x01", "A"),
            PriceRequest(Network.POLYGON, "0x02", "B"),
        ])

        assert result.price_for(Network.ETHEREUM, "0x01") == 3.0
        assert [(f.network, f.address) for f in result.failures] == [(Network.POLYGON, "0x02")]

    @pytest.mark.parametrize(
        "failure",
        [
            UpstreamUnavailableError("alchemy", "invalid JSON response"),
            None,
        ],
    )
    async def test_malformed_upstream_answer_becomes_failures(self, cache, failure):
        client = AlchemyClient("key")
        if failure is not None:
            client._request_json = AsyncMock(side_effect=failure)
        else:
            client._request_json = AsyncMock(return_value=["not", "an", "object"])
        service = PriceService(client, cache)

        result = await service.fetch_prices([
            PriceRequest(Network.ETHEREUM, "0x01", "A"),
            PriceRequest(Network.BASE, "0x02", "B"),
        ])

        assert result.prices == {}
        assert {(f.network, f.address) for f in result.failures} == {
            (Network.ETHEREUM, "0x01"),
            (Network.BASE, "0x02"),
        }

    async def test_missing_and_errored_rows_become_failures(self, service, client):
        client.fetch_prices = AsyncMock(return_value=[
            {"network": "eth-mainnet", "address": "0x01", "prices": [], "error": {"message": "Token not found"}},
            {"network": "eth-mainnet", "address": "0x02", "prices": [{"currency": "eur", "value": "1"}]},
        ])

        result = await service.fetch_prices([
            PriceRequest(Network.ETHEREUM, "0x01", "A"),
            PriceRequest(Network.ETHEREUM, "0x02", "B"),
            PriceRequest(Network.ETHEREUM, "0x03", "C"),
        ])

        assert result.prices == {}
        errors = {f.address: f.error for f in result.failures}
        assert errors["0x01"] == "Token not found"
        assert errors["0x02"] == "No USD price"
        assert errors["0x03"] == "No price returned"

    async def test_native_coin_priced_via_proxy(self, service, client):
        client.fetch_prices = AsyncMock(return_value=[price_row(Network.ETHEREUM, WETH, 2500.0)])

        result = await service.fetch_prices([PriceRequest(Network.ETHEREUM, NATIVE, "ETH")])

        assert result.price_for(Network.ETHEREUM, NATIVE) == 2500.0
        assert (Network.ETHEREUM, NATIVE) in result.proxied
        batch = client.fetch_prices.await_args.args[0]
        assert [r.address for r in batch] == [WETH]

    async def test_native_coin_without_proxy_fails(self, service, client):
        result = await service.fetch_prices([PriceRequest(Network.CELO, NATIVE, "CELO")])

        assert result.prices == {}
        assert result.failures[0].error == "No native price proxy configured"
        client.fetch_prices.assert_not_awaited()

    async def test_cached_prices_skip_upstream(self, service, client):
        request = PriceRequest(Network.ETHEREUM, "0xabc", "ABC")
        await service.fetch_prices([request])
        result = await service.fetch_prices([request])

        assert result.price_for(Network.ETHEREUM, "0xabc") == 1.0
        client.fetch_prices.assert_awaited_once()

    async def test_duplicate_requests_collapsed(self, service, client):
        await service.fetch_prices([
            PriceRequest(Network.ETHEREUM, "0xabc", "ABC"),
            PriceRequest(Network.ETHEREUM, "0xABC", "ABC"),
        ])
        batch = client.fetch_prices.await_args.args[0]
        assert len(batch) == 1

    def test_cache_key(self):
        assert PriceService.cache_key(Network.BASE, "usdc", "0xABC") == "token_price:base:USDC:0xabc"
