"""Token verification against the trust registry.

Every token address is in exactly one state per network: verified, unlisted,
or unknown (in neither registry). Unknown tokens are classified here, once:
malformed symbols go straight to the unlisted registry, and the rest are
looked up in one batched authority call. Already-classified tokens never
trigger an external call, so repeated classification is free.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List

from walletlens.clients.base import AuthorityLookup, AuthorityMatch
from walletlens.errors import UpstreamUnavailableError
from walletlens.networks import Network, is_native_token
from walletlens.repositories.base import network_key
from walletlens.repositories.entries import UnlistedToken, VerifiedToken
from walletlens.repositories.unlisted import UnlistedTokenRepository
from walletlens.repositories.verified import VerifiedTokenRepository
from walletlens.services.metrics import record_authority_lookup, record_classification

logger = logging.getLogger(__name__)

_SYMBOL_CHARS = re.compile(r"[A-Za-z0-9\-.]+")
_HAS_LETTER = re.compile(r"[A-Za-z]")
_ONLY_PUNCTUATION = re.compile(r"[^A-Za-z0-9]+")


def is_valid_symbol(symbol: str | None) -> bool:
    """2-10 chars of letters/digits/'-'/'.', with at least one letter."""
    if not symbol or not 2 <= len(symbol) <= 10:
        return False
    if not _SYMBOL_CHARS.fullmatch(symbol):
        return False
    if _ONLY_PUNCTUATION.fullmatch(symbol):
        return False
    return bool(_HAS_LETTER.search(symbol))


@dataclass(frozen=True)
class TokenRef:
    """A token to classify, as seen in a provider payload."""
    address: str
    symbol: str
    name: str = ""
    decimals: int = 18
    logo: str | None = None


@dataclass(frozen=True)
class VerificationStatus:
    is_verified: bool
    is_unlisted: bool

    @property
    def is_unknown(self) -> bool:
        return not (self.is_verified or self.is_unlisted)


VERIFIED = VerificationStatus(is_verified=True, is_unlisted=False)
UNLISTED = VerificationStatus(is_verified=False, is_unlisted=True)
UNKNOWN = VerificationStatus(is_verified=False, is_unlisted=False)


class TokenVerificationService:
    INVALID_SYMBOL_REASON = "Invalid symbol format"
    NOT_FOUND_REASON = "Not found in authority registry"
    INACTIVE_REASON = "Inactive in authority registry"
    LOOKUP_FAILED_REASON = "Authority lookup failed"

    def __init__(
        self,
        verified: VerifiedTokenRepository,
        unlisted: UnlistedTokenRepository,
        authority: AuthorityLookup,
    ):
        self._verified = verified
        self._unlisted = unlisted
        self._authority = authority

    async def get_status(self, network: Network | str, address: str) -> VerificationStatus:
        """Registry-only status; never classifies."""
        if await self._verified.contains(network, address):
            return VERIFIED
        if await self._unlisted.contains(network, address):
            return UNLISTED
        return UNKNOWN

    async def classify_and_verify(
        self, tokens: Iterable[TokenRef], network: Network | str
    ) -> Dict[str, VerificationStatus]:
        """Classify tokens, keyed by lowercased address.

        Every returned status is verified or unlisted.
        """
        net = network_key(network)
        verified = await self._verified.get_all(net)
        unlisted = await self._unlisted.get_all(net)

        result: Dict[str, VerificationStatus] = {}
        unknown: Dict[str, TokenRef] = {}
        for token in tokens:
            address = token.address.lower()
            if address in verified:
                result[address] = VERIFIED
            elif address in unlisted:
                result[address] = UNLISTED
            else:
                unknown.setdefault(address, token)

        record_classification(net, "cached", len(result))
        if not unknown:
            return result

        candidates: List[TokenRef] = []
        invalid = 0
        for address, token in unknown.items():
            if is_valid_symbol(token.symbol):
                candidates.append(token)
                continue
            result[address] = await self._mark_unlisted(net, token, self.INVALID_SYMBOL_REASON)
            invalid += 1

        if invalid:
            logger.info(f"Filtered {invalid} tokens with invalid symbols on {net} without a lookup")
            record_classification(net, "invalid_symbol", invalid)

        if candidates:
            matches, failed = await self._lookup(candidates)
            for token in candidates:
                address = token.address.lower()
                match = matches.get(token.symbol.upper())
                if match is not None and match.is_active:
                    await self._mark_verified(net, token, match)
                    result[address] = VERIFIED
                    record_classification(net, "verified")
                else:
                    if failed:
                        reason = self.LOOKUP_FAILED_REASON
                    elif match is None:
                        reason = self.NOT_FOUND_REASON
                    else:
                        reason = self.INACTIVE_REASON
                    result[address] = await self._mark_unlisted(net, token, reason)
                    record_classification(net, "unlisted")

        return result

    async def recheck_unlisted(
        self, tokens: Iterable[TokenRef], network: Network | str
    ) -> Dict[str, VerificationStatus]:
        """Look unlisted tokens up again, promoting any that became active.

        This is the only path that moves a token out of the unlisted registry.
        Tokens that are not currently unlisted are ignored.
        """
        net = network_key(network)
        unlisted = await self._unlisted.get_all(net)
        targets = [t for t in tokens if t.address.lower() in unlisted]
        result: Dict[str, VerificationStatus] = {}

        lookups = [t for t in targets if is_valid_symbol(t.symbol)]
        matches: Dict[str, AuthorityMatch] = {}
        if lookups:
            matches, _ = await self._lookup(lookups)

        for token in targets:
            address = token.address.lower()
            match = matches.get(token.symbol.upper()) if token in lookups else None
            if match is not None and match.is_active:
                await self._mark_verified(net, token, match)
                result[address] = VERIFIED
                logger.info(f"Promoted {token.symbol} ({address}) on {net} to verified")
            else:
                await self._unlisted.record_check(net, address)
                result[address] = UNLISTED

        return result

    async def _lookup(self, tokens: List[TokenRef]) -> tuple[Dict[str, AuthorityMatch], bool]:
        """One batched lookup by distinct symbol; returns (matches, failed)."""
        symbols = sorted({t.symbol.upper() for t in tokens})
        try:
            matches = await self._authority.find_by_symbols(symbols)
        except UpstreamUnavailableError as e:
            logger.error(f"Authority lookup for {len(symbols)} symbols failed: {e}")
            record_authority_lookup("error")
            return {}, True
        record_authority_lookup("success")
        return {symbol.upper(): match for symbol, match in matches.items()}, False

    async def _mark_verified(self, network: str, token: TokenRef, match: AuthorityMatch) -> None:
        # The store drops any unlisted row in the same write
        await self._verified.add(VerifiedToken(
            network=network,
            contract_address=token.address,
            symbol=token.symbol,
            name=token.name or match.name,
            decimals=token.decimals,
            logo_url=token.logo,
            external_id=match.id,
            is_native=is_native_token(token.address),
        ))
        await self._unlisted.invalidate(network)

    async def _mark_unlisted(self, network: str, token: TokenRef, reason: str) -> VerificationStatus:
        """Unlist a token unless a concurrent classification already verified it."""
        added = await self._unlisted.add(UnlistedToken(
            network=network,
            contract_address=token.address,
            reason=reason,
            symbol=token.symbol,
            name=token.name,
        ))
        if not added:
            return VERIFIED
        logger.debug(f"Token {token.symbol} ({token.address}) on {network} unlisted: {reason}")
        return UNLISTED
