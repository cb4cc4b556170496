"""Supported blockchain networks and their upstream identifiers.

Each upstream service names chains differently. The tables here translate the
canonical `Network` value into the id every client expects.
"""

from enum import Enum

from walletlens.errors import UnsupportedNetworkError


class Network(str, Enum):
    ETHEREUM = "ethereum"
    POLYGON = "polygon"
    ARBITRUM = "arbitrum"
    OPTIMISM = "optimism"
    BASE = "base"
    BSC = "bsc"
    AVALANCHE = "avalanche"
    FANTOM = "fantom"
    ZKSYNC = "zksync"
    SCROLL = "scroll"
    LINEA = "linea"
    BLAST = "blast"
    UNICHAIN = "unichain"
    GNOSIS = "gnosis"
    CELO = "celo"
    MANTLE = "mantle"


# Zerion relationship ids (chain.data.id)
ZERION_CHAIN_IDS: dict[Network, str] = {
    Network.ETHEREUM: "ethereum",
    Network.POLYGON: "polygon",
    Network.ARBITRUM: "arbitrum",
    Network.OPTIMISM: "optimism",
    Network.BASE: "base",
    Network.BSC: "binance-smart-chain",
    Network.AVALANCHE: "avalanche",
    Network.FANTOM: "fantom",
    Network.ZKSYNC: "zksync-era",
    Network.SCROLL: "scroll",
    Network.LINEA: "linea",
    Network.BLAST: "blast",
    Network.UNICHAIN: "unichain",
    Network.GNOSIS: "gnosis",
    Network.CELO: "celo",
    Network.MANTLE: "mantle",
}

# Moralis `chain` query parameter
MORALIS_CHAIN_IDS: dict[Network, str] = {
    Network.ETHEREUM: "eth",
    Network.POLYGON: "polygon",
    Network.ARBITRUM: "arbitrum",
    Network.BASE: "base",
}

# Alchemy network slugs (Prices API and JSON-RPC subdomain)
ALCHEMY_NETWORK_IDS: dict[Network, str] = {
    Network.ETHEREUM: "eth-mainnet",
    Network.POLYGON: "polygon-mainnet",
    Network.ARBITRUM: "arb-mainnet",
    Network.OPTIMISM: "opt-mainnet",
    Network.BASE: "base-mainnet",
    Network.BSC: "bnb-mainnet",
    Network.AVALANCHE: "avax-mainnet",
    Network.FANTOM: "fantom-mainnet",
    Network.ZKSYNC: "zksync-mainnet",
    Network.SCROLL: "scroll-mainnet",
    Network.LINEA: "linea-mainnet",
    Network.BLAST: "blast-mainnet",
    Network.UNICHAIN: "unichain-mainnet",
    Network.GNOSIS: "gnosis-mainnet",
    Network.CELO: "celo-mainnet",
    Network.MANTLE: "mantle-mainnet",
}

# Placeholder addresses providers use for a chain's native coin
NATIVE_TOKEN_ADDRESSES = frozenset({
    "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee",
    "0x0000000000000000000000000000000000000000",
})

_ALIASES = {
    "eth": Network.ETHEREUM,
    "mainnet": Network.ETHEREUM,
    "matic": Network.POLYGON,
    "arbitrum-one": Network.ARBITRUM,
    "binance-smart-chain": Network.BSC,
    "bnb": Network.BSC,
    "avax": Network.AVALANCHE,
    "zksync-era": Network.ZKSYNC,
    "xdai": Network.GNOSIS,
}


def parse_network(value: str | Network) -> Network:
    """Resolve a network name or alias, raising for anything unknown."""
    if isinstance(value, Network):
        return value
    key = value.strip().lower()
    if key in _ALIASES:
        return _ALIASES[key]
    try:
        return Network(key)
    except ValueError:
        raise UnsupportedNetworkError(value, "walletlens") from None


def network_from_zerion_chain(chain_id: str) -> Network | None:
    for network, zerion_id in ZERION_CHAIN_IDS.items():
        if zerion_id == chain_id:
            return network
    return None


def is_native_token(address: str) -> bool:
    return address.lower() in NATIVE_TOKEN_ADDRESSES
