"""Moralis position provider.

Moralis returns one entry per (protocol, position label) with every token of
that position inline. Lending exposure arrives as separate "supplied" and
"borrowed" entries per protocol; those are merged into a single lending
position keyed by `protocol_id`. Wallet balances come from the token
endpoint, minus anything Moralis flags as possible spam.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, List

from walletlens.clients.base import MoralisPositionsClient
from walletlens.networks import MORALIS_CHAIN_IDS, Network
from walletlens.providers.base import (
    AccountData,
    Position,
    PositionDetails,
    PositionKind,
    PositionModule,
    PositionProvider,
    ProjectedEarnings,
    Token,
    TokenRole,
)
from walletlens.services.metrics import record_group_dropped, track_provider_request

logger = logging.getLogger(__name__)

_LABEL_KINDS = {
    "supplied": PositionKind.SUPPLIED,
    "borrowed": PositionKind.BORROWED,
    "liquidity": PositionKind.LIQUIDITY,
    "staked": PositionKind.STAKED,
    "staking": PositionKind.STAKED,
    "farming": PositionKind.FARMING,
    "reward": PositionKind.REWARD,
    "rewards": PositionKind.REWARD,
    "vested": PositionKind.VESTED,
    "locked": PositionKind.LOCKED,
}

_KIND_MODULES = {
    PositionKind.SUPPLIED: PositionModule.LENDING,
    PositionKind.BORROWED: PositionModule.LENDING,
    PositionKind.LIQUIDITY: PositionModule.LIQUIDITY,
    PositionKind.STAKED: PositionModule.STAKING,
    PositionKind.FARMING: PositionModule.FARMING,
}

_TOKEN_ROLES = {
    "supplied": TokenRole.SUPPLIED,
    "borrowed": TokenRole.BORROWED,
    "reward": TokenRole.REWARD,
    "defi-token": TokenRole.DEFI_TOKEN,
}


def map_label(label: str | None) -> PositionKind:
    return _LABEL_KINDS.get((label or "").strip().lower(), PositionKind.OTHER)


def map_token_type(token_type: str | None) -> TokenRole:
    return _TOKEN_ROLES.get((token_type or "").strip().lower(), TokenRole.UNDERLYING)


def _as_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _projected_earnings(raw: Dict[str, Any] | None) -> ProjectedEarnings | None:
    if not raw:
        return None
    return ProjectedEarnings(
        daily=_as_float(raw.get("daily")) or 0.0,
        weekly=_as_float(raw.get("weekly")) or 0.0,
        monthly=_as_float(raw.get("monthly")) or 0.0,
        yearly=_as_float(raw.get("yearly")) or 0.0,
    )


class MoralisProvider(PositionProvider):
    def __init__(self, client: MoralisPositionsClient):
        self._client = client

    @property
    def name(self) -> str:
        return "moralis"

    @property
    def supported_networks(self) -> FrozenSet[Network]:
        return frozenset(MORALIS_CHAIN_IDS)

    async def fetch_positions(self, wallet_address: str, network: Network) -> List[Position]:
        self.ensure_supported(network)
        entries = await self._fetch_entries(wallet_address, MORALIS_CHAIN_IDS[network])
        positions = [self._map_entry(entry) for entry in entries]
        logger.info(f"Found {len(positions)} Moralis positions for {wallet_address} on {network.value}")
        return self._aggregate(positions)

    async def fetch_balances(self, wallet_address: str, network: Network) -> List[Token]:
        self.ensure_supported(network)
        rows = await self._fetch_wallet_tokens(wallet_address, MORALIS_CHAIN_IDS[network])
        balances = []
        for row in rows:
            if row.get("possible_spam"):
                continue
            token = self._map_token({**row, "contract_address": row.get("token_address")})
            token.role = TokenRole.GENERIC
            balances.append(token)
        logger.info(f"Found {len(balances)} Moralis balances for {wallet_address} on {network.value}")
        return balances

    @track_provider_request("moralis", "positions")
    async def _fetch_entries(self, wallet_address: str, chain: str) -> List[Dict[str, Any]]:
        return await self._client.fetch_positions(wallet_address, chain)

    @track_provider_request("moralis", "balances")
    async def _fetch_wallet_tokens(self, wallet_address: str, chain: str) -> List[Dict[str, Any]]:
        return await self._client.fetch_wallet_tokens(wallet_address, chain)

    def _map_entry(self, entry: Dict[str, Any]) -> Position:
        body = entry.get("position") or {}
        label = body.get("label")
        kind = map_label(label)
        details_raw = body.get("position_details") or {}
        account_raw = entry.get("account_data")
        protocol_id = entry.get("protocol_id") or "unknown"

        tokens = [self._map_token(raw) for raw in body.get("tokens") or []]
        apy = _as_float(details_raw.get("apy"))

        return Position(
            id=f"{protocol_id}-{body.get('address') or 'unknown'}-{label}",
            protocol_name=entry.get("protocol_name") or "Unknown",
            protocol_id=protocol_id,
            protocol_url=entry.get("protocol_url"),
            protocol_logo=entry.get("protocol_logo"),
            kind=kind,
            module=_KIND_MODULES.get(kind, PositionModule.OTHER),
            name=(label or "").title(),
            pool_address=body.get("address"),
            apy=apy,
            tokens=tokens,
            details=PositionDetails(
                market=details_raw.get("market"),
                is_debt=bool(details_raw.get("is_debt")),
                apy=apy,
            ),
            account_data=AccountData(
                health_factor=_as_float(account_raw.get("health_factor")),
                net_apy=_as_float(account_raw.get("net_apy")),
            ) if account_raw else None,
            projected_earnings=_projected_earnings(entry.get("total_projected_earnings_usd")),
            total_value_usd=_as_float(body.get("balance_usd")) or 0.0,
            unclaimed_value_usd=_as_float(body.get("total_unclaimed_usd_value")) or 0.0,
        )

    @staticmethod
    def _map_token(raw: Dict[str, Any]) -> Token:
        decimals = raw.get("decimals")
        try:
            decimals = int(decimals)
        except (TypeError, ValueError):
            decimals = 18
        return Token(
            symbol=raw.get("symbol") or "",
            name=raw.get("name") or "",
            contract_address=raw.get("contract_address") or "",
            decimals=decimals,
            role=map_token_type(raw.get("token_type")),
            balance=str(raw.get("balance") or "0"),
            balance_formatted=_as_float(raw.get("balance_formatted")) or 0.0,
            usd_price=_as_float(raw.get("usd_price")),
            usd_value=_as_float(raw.get("usd_value")),
            logo=raw.get("logo") or raw.get("thumbnail"),
        )

    def _aggregate(self, positions: List[Position]) -> List[Position]:
        result: List[Position] = []
        lending: Dict[str, List[Position]] = {}

        for position in positions:
            if position.kind in (PositionKind.SUPPLIED, PositionKind.BORROWED):
                lending.setdefault(position.protocol_id, []).append(position)
            elif position.kind in (PositionKind.STAKED, PositionKind.FARMING):
                ordered = self._order_staked_first(position)
                if ordered is not None:
                    result.append(ordered)
            else:
                result.append(position)

        for protocol_id, members in lending.items():
            result.append(self._merge_lending(protocol_id, members))

        return result

    def _order_staked_first(self, position: Position) -> Position | None:
        """Lay tokens out as staked-then-reward and record the split."""
        staked = [t for t in position.tokens if t.role != TokenRole.REWARD]
        rewards = [t for t in position.tokens if t.role == TokenRole.REWARD]
        if not staked:
            logger.warning(
                f"{position.kind.value.title()} position {position.id} has no staked tokens, skipping"
            )
            record_group_dropped(self.name, "no_staked")
            return None

        position.tokens = staked + rewards
        position.details.staked_count = len(staked)
        position.details.rewards_count = len(rewards)
        return position

    @staticmethod
    def _merge_lending(protocol_id: str, members: List[Position]) -> Position:
        supplied = [p for p in members if p.kind == PositionKind.SUPPLIED]
        borrowed = [p for p in members if p.kind == PositionKind.BORROWED]
        first = supplied[0] if supplied else borrowed[0]

        earnings = [p.projected_earnings for p in members if p.projected_earnings is not None]
        combined = None
        for item in earnings:
            combined = item if combined is None else combined + item

        account_data = next((p.account_data for p in members if p.account_data is not None), None)

        return Position(
            id=first.id,
            protocol_name=first.protocol_name,
            protocol_id=protocol_id,
            protocol_url=first.protocol_url,
            protocol_logo=first.protocol_logo,
            kind=PositionKind.LENDING,
            module=PositionModule.LENDING,
            name="Lending",
            apy=first.apy,
            tokens=[t for p in supplied for t in p.tokens] + [t for p in borrowed for t in p.tokens],
            details=PositionDetails(market=first.details.market, is_debt=bool(borrowed)),
            account_data=account_data,
            projected_earnings=combined,
        )
