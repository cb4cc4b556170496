import asyncio

import pytest
from unittest.mock import AsyncMock

from walletlens.clients.base import AuthorityMatch
from walletlens.errors import UpstreamUnavailableError
from walletlens.networks import Network
from walletlens.repositories.entries import UnlistedToken
from walletlens.repositories.unlisted import UnlistedTokenRepository
from walletlens.repositories.verified import VerifiedTokenRepository
from walletlens.services.verification import (
    UNKNOWN,
    UNLISTED,
    VERIFIED,
    TokenRef,
    TokenVerificationService,
    is_valid_symbol,
)

USDC_MATCH = AuthorityMatch(id="3408", is_active=True, symbol="USDC", name="USD Coin")


class TestIsValidSymbol:
    @pytest.mark.parametrize("symbol", ["USDC", "WETH", "cUSDCv3", "stETH", "USDC.e", "BTC-B", "1INCH", "ab"])
    def test_valid(self, symbol):
        assert is_valid_symbol(symbol)

    @pytest.mark.parametrize(
        "symbol",
        [None, "", "X", "VERYLONGSYMBOL", "123", "..", "-.-", "US DC", "$USDC", "🚀MOON", "visit.com!", "USDC\n", "\nUSDC"],
    )
    def test_invalid(self, symbol):
        assert not is_valid_symbol(symbol)


class TestTokenVerificationService:
    @pytest.fixture
    def verified(self, store, cache):
        return VerifiedTokenRepository(store, cache, ttl_seconds=3600)

    @pytest.fixture
    def unlisted(self, store, cache):
        return UnlistedTokenRepository(store, cache, ttl_seconds=600)

    @pytest.fixture
    def authority(self):
        authority = AsyncMock()
        authority.find_by_symbols = AsyncMock(return_value={"USDC": USDC_MATCH})
        return authority

    @pytest.fixture
    def service(self, verified, unlisted, authority):
        return TokenVerificationService(verified, unlisted, authority)

    async def test_classifies_unknown_tokens(self, service, authority, verified, unlisted):
        tokens = [TokenRef(address="0xAAA", symbol="X"), TokenRef(address="0xBBB", symbol="USDC")]

        result = await service.classify_and_verify(tokens, Network.ETHEREUM)

        assert result == {"0xaaa": UNLISTED, "0xbbb": VERIFIED}
        # Only the well-formed symbol reaches the authority, in a single call
        authority.find_by_symbols.assert_awaited_once_with(["USDC"])
        assert await verified.contains("ethereum", "0xbbb")
        entry = await unlisted.get("ethereum", "0xaaa")
        assert entry.reason == TokenVerificationService.INVALID_SYMBOL_REASON

    async def test_second_classification_makes_no_lookup(self, service, authority):
        tokens = [TokenRef(address="0xAAA", symbol="X"), TokenRef(address="0xBBB", symbol="USDC")]
        first = await service.classify_and_verify(tokens, Network.ETHEREUM)
        second = await service.classify_and_verify(tokens, Network.ETHEREUM)

        assert first == second
        authority.find_by_symbols.assert_awaited_once()

    async def test_every_result_is_verified_or_unlisted(self, service, authority):
        authority.find_by_symbols.return_value = {
            "USDC": USDC_MATCH,
            "OLD": AuthorityMatch(id="1", is_active=False, symbol="OLD", name="Old Token"),
        }
        tokens = [
            TokenRef(address="0x01", symbol="USDC"),
            TokenRef(address="0x02", symbol="OLD"),
            TokenRef(address="0x03", symbol="NOPE"),
            TokenRef(address="0x04", symbol="!!"),
        ]

        result = await service.classify_and_verify(tokens, "ethereum")

        assert set(result) == {"0x01", "0x02", "0x03", "0x04"}
        assert all(not status.is_unknown for status in result.values())
        assert result["0x01"] == VERIFIED
        assert result["0x02"] == UNLISTED
        assert result["0x03"] == UNLISTED

    async def test_unlisted_reasons(self, service, authority, unlisted):
        authority.find_by_symbols.return_value = {
            "OLD": AuthorityMatch(id="1", is_active=False, symbol="OLD", name="Old Token"),
        }
        await service.classify_and_verify(
            [TokenRef(address="0x02", symbol="OLD"), TokenRef(address="0x03", symbol="NOPE")], "ethereum"
        )

        assert (await unlisted.get("ethereum", "0x02")).reason == TokenVerificationService.INACTIVE_REASON
        assert (await unlisted.get("ethereum", "0x03")).reason == TokenVerificationService.NOT_FOUND_REASON

    async def test_lookup_keys_are_case_insensitive(self, service, authority):
        authority.find_by_symbols.return_value = {"weth": AuthorityMatch("1027", True, "WETH", "Wrapped Ether")}
        result = await service.classify_and_verify([TokenRef(address="0x05", symbol="WETH")], "ethereum")
        assert result["0x05"] == VERIFIED

    async def test_duplicate_symbols_share_one_lookup(self, service, authority):
        tokens = [TokenRef(address="0x06", symbol="usdc"), TokenRef(address="0x07", symbol="USDC")]
        await service.classify_and_verify(tokens, "ethereum")
        authority.find_by_symbols.assert_awaited_once_with(["USDC"])

    async def test_lookup_failure_marks_unlisted(self, service, authority, unlisted):
        authority.find_by_symbols.side_effect = UpstreamUnavailableError("coinmarketcap", "HTTP 503")

        result = await service.classify_and_verify([TokenRef(address="0xBBB", symbol="USDC")], "ethereum")

        assert result == {"0xbbb": UNLISTED}
        entry = await unlisted.get("ethereum", "0xbbb")
        assert entry.reason == TokenVerificationService.LOOKUP_FAILED_REASON

    async def test_concurrent_classifications_never_leave_token_in_both_registries(
        self, service, authority, verified, unlisted
    ):
        authority.find_by_symbols = AsyncMock(
            side_effect=[UpstreamUnavailableError("coinmarketcap", "HTTP 503"), {"USDC": USDC_MATCH}]
        )
        tokens = [TokenRef(address="0xBBB", symbol="USDC")]

        first, second = await asyncio.gather(
            service.classify_and_verify(tokens, "ethereum"),
            service.classify_and_verify(tokens, "ethereum"),
        )

        assert authority.find_by_symbols.await_count == 2
        assert VERIFIED in (first["0xbbb"], second["0xbbb"])
        assert await verified.contains("ethereum", "0xbbb")
        assert not await unlisted.contains("ethereum", "0xbbb")
        assert await service.get_status("ethereum", "0xbbb") == VERIFIED

    async def test_unlisting_an_already_verified_token_reports_verified(self, service, verified, unlisted):
        await service.classify_and_verify([TokenRef(address="0xBBB", symbol="USDC")], "ethereum")

        status = await service._mark_unlisted("ethereum", TokenRef(address="0xBBB", symbol="USDC"), "Not found")

        assert status == VERIFIED
        assert not await unlisted.contains("ethereum", "0xbbb")

    async def test_networks_are_independent(self, service, authority):
        tokens = [TokenRef(address="0xBBB", symbol="USDC")]
        await service.classify_and_verify(tokens, "ethereum")
        await service.classify_and_verify(tokens, "polygon")
        assert authority.find_by_symbols.await_count == 2

    async def test_get_status_never_classifies(self, service, authority):
        assert await service.get_status("ethereum", "0xBBB") == UNKNOWN
        authority.find_by_symbols.assert_not_awaited()

        await service.classify_and_verify([TokenRef(address="0xBBB", symbol="USDC")], "ethereum")
        assert await service.get_status("ethereum", "0xbbb") == VERIFIED

    async def test_recheck_promotes_active_token(self, service, authority, unlisted, verified):
        await unlisted.add(UnlistedToken(network="ethereum", contract_address="0xbbb", reason="Not found"))

        result = await service.recheck_unlisted([TokenRef(address="0xBBB", symbol="USDC")], "ethereum")

        assert result == {"0xbbb": VERIFIED}
        assert not await unlisted.contains("ethereum", "0xbbb")
        assert await verified.contains("ethereum", "0xbbb")

    async def test_recheck_keeps_unmatched_token_unlisted(self, service, authority, unlisted):
        authority.find_by_symbols.return_value = {}
        await unlisted.add(UnlistedToken(network="ethereum", contract_address="0xccc", reason="Not found"))

        result = await service.recheck_unlisted([TokenRef(address="0xccc", symbol="NOPE")], "ethereum")

        assert result == {"0xccc": UNLISTED}
        assert (await unlisted.get("ethereum", "0xccc")).check_count == 2

    async def test_recheck_ignores_tokens_not_unlisted(self, service, authority):
        result = await service.recheck_unlisted([TokenRef(address="0xddd", symbol="USDC")], "ethereum")
        assert result == {}
        authority.find_by_symbols.assert_not_awaited()
