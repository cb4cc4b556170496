import pytest

from walletlens.errors import UnsupportedNetworkError
from walletlens.networks import (
    ALCHEMY_NETWORK_IDS,
    ZERION_CHAIN_IDS,
    Network,
    is_native_token,
    network_from_zerion_chain,
    parse_network,
)


class TestParseNetwork:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("ethereum", Network.ETHEREUM),
            ("ETH", Network.ETHEREUM),
            ("  Polygon ", Network.POLYGON),
            ("binance-smart-chain", Network.BSC),
            ("zksync-era", Network.ZKSYNC),
            (Network.BASE, Network.BASE),
        ],
    )
    def test_known(self, value, expected):
        assert parse_network(value) == expected

    def test_unknown_raises(self):
        with pytest.raises(UnsupportedNetworkError) as exc_info:
            parse_network("solana")
        assert exc_info.value.network == "solana"


class TestChainTables:
    def test_every_network_has_zerion_and_alchemy_ids(self):
        assert set(ZERION_CHAIN_IDS) == set(Network)
        assert set(ALCHEMY_NETWORK_IDS) == set(Network)

    def test_zerion_reverse_lookup(self):
        assert network_from_zerion_chain("binance-smart-chain") == Network.BSC
        assert network_from_zerion_chain("solana") is None


class TestNativeToken:
    def test_placeholders(self):
        assert is_native_token("0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE")
        assert is_native_token("0x0000000000000000000000000000000000000000")
        assert not is_native_token("0xa0b86991c6218b36c1d19d4a2e9eb0ce3606eb48")
