"""Exception types raised across the aggregation pipeline.

Business outcomes such as an unlisted or malformed token are never exceptions.
Only infrastructure failures and caller mistakes are raised.
"""


class WalletLensError(Exception):
    """Base class for all walletlens errors."""


class UnsupportedNetworkError(WalletLensError):
    """A provider or pricing client was asked for a network it cannot serve."""

    def __init__(self, network: str, component: str):
        self.network = network
        self.component = component
        super().__init__(f"{component} does not support network '{network}'")


class UpstreamUnavailableError(WalletLensError):
    """An upstream data provider or lookup service failed."""

    def __init__(self, service: str, detail: str):
        self.service = service
        self.detail = detail
        super().__init__(f"{service} unavailable: {detail}")


class InvalidWalletAddressError(WalletLensError):
    """The wallet address is not a valid EVM address."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Invalid wallet address: {address!r}")
