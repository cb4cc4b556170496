"""Zerion position provider.

Zerion reports one row per (position, fungible). Rows that belong together
(a farm's stake and its pending rewards, a lending market's deposits and
loans) share a `group_id`, so this adapter merges them back into one logical
position per group. Wallet balances come from the same endpoint with the
`only_simple` filter and need no grouping.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, List, Sequence, Tuple

from walletlens.clients.base import ZerionPositionsClient
from walletlens.networks import (
    ZERION_CHAIN_IDS,
    Network,
    network_from_zerion_chain,
)
from walletlens.providers.base import (
    Position,
    PositionDetails,
    PositionKind,
    PositionModule,
    PositionProvider,
    Token,
    TokenRole,
)
from walletlens.services.metrics import record_group_dropped, track_provider_request

logger = logging.getLogger(__name__)

NATIVE_PLACEHOLDER = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"

_RAW_TYPE_KINDS = {
    "deposit": PositionKind.SUPPLIED,
    "lending": PositionKind.SUPPLIED,
    "loan": PositionKind.BORROWED,
    "borrow": PositionKind.BORROWED,
    "borrowing": PositionKind.BORROWED,
    "liquidity": PositionKind.LIQUIDITY,
    "liquidity_pool": PositionKind.LIQUIDITY,
    "staked": PositionKind.STAKED,
    "staking": PositionKind.STAKED,
    "reward": PositionKind.REWARD,
    "claimable": PositionKind.REWARD,
    "farming": PositionKind.FARMING,
    "vesting": PositionKind.VESTED,
    "locked": PositionKind.LOCKED,
}

_MODULES = {
    "lending": PositionModule.LENDING,
    "farming": PositionModule.FARMING,
    "staked": PositionModule.STAKING,
    "staking": PositionModule.STAKING,
    "liquidity_pool": PositionModule.LIQUIDITY,
    "yield": PositionModule.YIELD,
}

# Modules whose rows are merged by group id
_AGGREGATED_MODULES = (PositionModule.FARMING, PositionModule.STAKING, PositionModule.LENDING)

_AAVE_SYMBOL_PREFIXES = ("aeth", "abas", "aarb", "aopt", "apol", "aava")


def map_position_type(position_type: str | None, protocol_module: str | None) -> PositionKind:
    """Map Zerion's position_type (with its module as a hint) to a kind.

    Deposits into a yield module are yield, not generic supply. Anything not
    listed is OTHER so new upstream types stay visible.
    """
    raw = (position_type or "").strip().lower()
    module = (protocol_module or "").strip().lower()
    if raw == "deposit" and module == "yield":
        return PositionKind.YIELD
    return _RAW_TYPE_KINDS.get(raw, PositionKind.OTHER)


def map_module(protocol_module: str | None) -> PositionModule:
    return _MODULES.get((protocol_module or "").strip().lower(), PositionModule.OTHER)


def role_for_kind(kind: PositionKind) -> TokenRole:
    if kind in (PositionKind.SUPPLIED, PositionKind.YIELD):
        return TokenRole.SUPPLIED
    if kind == PositionKind.BORROWED:
        return TokenRole.BORROWED
    if kind == PositionKind.REWARD:
        return TokenRole.REWARD
    if kind in (PositionKind.STAKED, PositionKind.FARMING, PositionKind.LOCKED, PositionKind.VESTED):
        return TokenRole.UNDERLYING
    return TokenRole.GENERIC


def infer_protocol(token_name: str, token_symbol: str) -> Tuple[str, str]:
    """Best-effort (protocol name, protocol id) from a receipt token."""
    name = token_name or ""
    symbol = token_symbol or ""
    lowered = symbol.lower()

    if "aave" in name.lower() or lowered.startswith(_AAVE_SYMBOL_PREFIXES) or "debt" in lowered:
        return "Aave", "aave"
    if "compound" in name.lower() or (len(symbol) > 1 and symbol[0] == "c" and symbol[1].isupper()):
        return "Compound", "compound"
    if "LP" in symbol or "UNI-V" in symbol:
        if "pancake" in name.lower():
            return "PancakeSwap", "pancakeswap"
        return "Uniswap", "uniswap"
    return "Unknown", "unknown"


def _as_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class ZerionProvider(PositionProvider):
    def __init__(self, client: ZerionPositionsClient):
        self._client = client

    @property
    def name(self) -> str:
        return "zerion"

    @property
    def supported_networks(self) -> FrozenSet[Network]:
        return frozenset(ZERION_CHAIN_IDS)

    async def fetch_positions(self, wallet_address: str, network: Network) -> List[Position]:
        self.ensure_supported(network)
        rows = await self._fetch_rows(wallet_address, [network])
        positions = [self._map_row(row, network) for row in rows]
        return self._aggregate(positions)

    async def fetch_positions_multi_network(
        self, wallet_address: str, networks: Sequence[Network]
    ) -> Dict[Network, List[Position]]:
        """One upstream call for every chain; rows are split by their chain id."""
        for network in networks:
            self.ensure_supported(network)
        rows = await self._fetch_rows(wallet_address, networks)

        by_network: Dict[Network, List[Position]] = {network: [] for network in networks}
        for row in rows:
            network = network_from_zerion_chain(self._chain_id(row))
            if network not in by_network:
                logger.debug(f"Skipping Zerion row {row.get('id')} on unrequested chain")
                continue
            by_network[network].append(self._map_row(row, network))

        return {network: self._aggregate(items) for network, items in by_network.items()}

    async def fetch_balances(self, wallet_address: str, network: Network) -> List[Token]:
        balances = await self.fetch_balances_multi_network(wallet_address, [network])
        return balances[network]

    async def fetch_balances_multi_network(
        self, wallet_address: str, networks: Sequence[Network]
    ) -> Dict[Network, List[Token]]:
        """Simple positions are plain holdings: one fungible per row."""
        for network in networks:
            self.ensure_supported(network)
        rows = await self._fetch_balance_rows(wallet_address, networks)

        by_network: Dict[Network, List[Token]] = {network: [] for network in networks}
        for row in rows:
            network = network_from_zerion_chain(self._chain_id(row))
            if network not in by_network:
                continue
            by_network[network].append(
                self._map_token(row.get("attributes") or {}, network, TokenRole.GENERIC)
            )
        return by_network

    @track_provider_request("zerion", "positions")
    async def _fetch_rows(self, wallet_address: str, networks: Sequence[Network]) -> List[Dict[str, Any]]:
        chain_ids = [ZERION_CHAIN_IDS[network] for network in networks]
        return await self._client.fetch_positions(wallet_address, chain_ids)

    @track_provider_request("zerion", "balances")
    async def _fetch_balance_rows(
        self, wallet_address: str, networks: Sequence[Network]
    ) -> List[Dict[str, Any]]:
        chain_ids = [ZERION_CHAIN_IDS[network] for network in networks]
        return await self._client.fetch_positions(wallet_address, chain_ids, position_filter="only_simple")

    @staticmethod
    def _chain_id(row: Dict[str, Any]) -> str:
        relationships = row.get("relationships") or {}
        return ((relationships.get("chain") or {}).get("data") or {}).get("id", "")

    def _map_row(self, row: Dict[str, Any], network: Network) -> Position:
        attributes = row.get("attributes") or {}
        relationships = row.get("relationships") or {}
        app = attributes.get("application_metadata") or {}

        protocol_module = attributes.get("protocol_module")
        kind = map_position_type(attributes.get("position_type"), protocol_module)
        token = self._map_token(attributes, network, role_for_kind(kind))

        protocol_name = attributes.get("protocol") or app.get("name")
        protocol_id = ((relationships.get("dapp") or {}).get("data") or {}).get("id")
        if not protocol_name:
            protocol_name, inferred_id = infer_protocol(token.name, token.symbol)
            protocol_id = protocol_id or inferred_id
        if not protocol_id:
            protocol_id = protocol_name.lower().replace(" ", "-")

        return Position(
            id=str(row.get("id", "")),
            protocol_name=protocol_name,
            protocol_id=protocol_id,
            protocol_url=app.get("url"),
            protocol_logo=(app.get("icon") or {}).get("url"),
            kind=kind,
            module=map_module(protocol_module),
            name=attributes.get("name") or protocol_name,
            pool_address=(attributes.get("pool_address") or None),
            group_id=attributes.get("group_id") or None,
            tokens=[token],
            total_value_usd=token.usd_value or 0.0,
        )

    def _map_token(self, attributes: Dict[str, Any], network: Network, role: TokenRole) -> Token:
        fungible = attributes.get("fungible_info") or {}
        quantity = attributes.get("quantity") or {}
        decimals = int(quantity.get("decimals") or self._fungible_decimals(fungible, network) or 18)
        return Token(
            symbol=fungible.get("symbol") or "",
            name=fungible.get("name") or "",
            contract_address=self._fungible_address(fungible, ZERION_CHAIN_IDS[network]),
            decimals=decimals,
            role=role,
            balance=str(quantity.get("int") or "0"),
            balance_formatted=_as_float(quantity.get("float") or quantity.get("numeric")) or 0.0,
            usd_price=_as_float(attributes.get("price")),
            usd_value=_as_float(attributes.get("value")),
            logo=(fungible.get("icon") or {}).get("url"),
        )

    @staticmethod
    def _fungible_address(fungible: Dict[str, Any], chain_id: str) -> str:
        for implementation in fungible.get("implementations") or []:
            if implementation.get("chain_id") == chain_id:
                return implementation.get("address") or NATIVE_PLACEHOLDER
        return NATIVE_PLACEHOLDER

    @staticmethod
    def _fungible_decimals(fungible: Dict[str, Any], network: Network) -> int | None:
        for implementation in fungible.get("implementations") or []:
            if implementation.get("chain_id") == ZERION_CHAIN_IDS[network]:
                return implementation.get("decimals")
        return None

    def _aggregate(self, positions: List[Position]) -> List[Position]:
        result: List[Position] = []
        groups: Dict[Tuple[PositionModule, str, str], List[Position]] = {}

        for position in positions:
            if position.module in _AGGREGATED_MODULES:
                key = (position.module, position.protocol_id, position.group_id or position.id)
                groups.setdefault(key, []).append(position)
            else:
                result.append(position)

        for (module, _, group_key), members in groups.items():
            if module == PositionModule.LENDING:
                merged = self._merge_lending(group_key, members)
            else:
                merged = self._merge_staked_with_rewards(group_key, module, members)
            if merged is not None:
                result.append(merged)

        return result

    def _merge_staked_with_rewards(
        self, group_key: str, module: PositionModule, members: List[Position]
    ) -> Position | None:
        staked = [p for p in members if p.kind in (PositionKind.STAKED, PositionKind.FARMING)]
        rewards = [p for p in members if p.kind == PositionKind.REWARD]
        label = "Farming" if module == PositionModule.FARMING else "Staking"

        if not staked:
            logger.warning(f"{label} group {group_key} has no staked positions, skipping")
            record_group_dropped(self.name, "no_staked")
            return None

        first = staked[0]
        staked_tokens = [token for p in staked for token in p.tokens]
        reward_tokens = [token for p in rewards for token in p.tokens]
        staked_value = sum(p.total_value_usd for p in staked)
        rewards_value = sum(p.total_value_usd for p in rewards)

        return Position(
            id=first.id,
            protocol_name=first.protocol_name,
            protocol_id=first.protocol_id,
            protocol_url=first.protocol_url,
            protocol_logo=first.protocol_logo,
            kind=PositionKind.FARMING if module == PositionModule.FARMING else PositionKind.STAKED,
            module=module,
            name=first.name,
            pool_address=first.pool_address,
            group_id=first.group_id,
            apy=first.apy,
            tokens=staked_tokens + reward_tokens,
            details=PositionDetails(
                staked_value_usd=staked_value,
                rewards_value_usd=rewards_value,
                staked_count=len(staked_tokens),
                rewards_count=len(reward_tokens),
            ),
            total_value_usd=staked_value + rewards_value,
            unclaimed_value_usd=rewards_value,
        )

    def _merge_lending(self, group_key: str, members: List[Position]) -> Position | None:
        supplied = [p for p in members if p.kind == PositionKind.SUPPLIED]
        borrowed = [p for p in members if p.kind == PositionKind.BORROWED]

        if not supplied and not borrowed:
            logger.warning(f"Lending group {group_key} has no supplied or borrowed positions, skipping")
            record_group_dropped(self.name, "empty_lending")
            return None

        first = supplied[0] if supplied else borrowed[0]
        supplied_value = sum(p.total_value_usd for p in supplied)
        borrowed_value = sum(p.total_value_usd for p in borrowed)

        return Position(
            id=first.id,
            protocol_name=first.protocol_name,
            protocol_id=first.protocol_id,
            protocol_url=first.protocol_url,
            protocol_logo=first.protocol_logo,
            kind=PositionKind.LENDING,
            module=PositionModule.LENDING,
            name=first.name,
            group_id=first.group_id,
            apy=first.apy,
            tokens=[t for p in supplied for t in p.tokens] + [t for p in borrowed for t in p.tokens],
            details=PositionDetails(
                supplied_value_usd=supplied_value,
                borrowed_value_usd=borrowed_value,
                net_value_usd=supplied_value - borrowed_value,
                is_debt=bool(borrowed),
            ),
            total_value_usd=supplied_value - borrowed_value,
        )
