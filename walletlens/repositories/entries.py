"""Registry entry models.

These plain dataclasses are what repositories hand out and what the
distributed cache stores (as JSON). The SQLAlchemy records never leave the
store module.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict


def _utcnow() -> datetime:
    return datetime.utcnow()


def _dump(obj: Any) -> Dict[str, Any]:
    data = asdict(obj)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def _parse_time(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class VerifiedToken:
    network: str
    contract_address: str
    symbol: str
    name: str = ""
    decimals: int = 18
    logo_url: str | None = None
    external_id: str | None = None
    standard: str = "ERC20"
    is_native: bool = False
    source: str = "coinmarketcap"
    verified_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        self.contract_address = self.contract_address.lower()

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> VerifiedToken:
        return cls(**{**data, "verified_at": _parse_time(data.get("verified_at")) or _utcnow()})


@dataclass
class UnlistedToken:
    network: str
    contract_address: str
    reason: str
    symbol: str | None = None
    name: str | None = None
    first_seen_at: datetime = field(default_factory=_utcnow)
    last_checked_at: datetime = field(default_factory=_utcnow)
    check_count: int = 1

    def __post_init__(self):
        self.contract_address = self.contract_address.lower()

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> UnlistedToken:
        return cls(**{
            **data,
            "first_seen_at": _parse_time(data.get("first_seen_at")) or _utcnow(),
            "last_checked_at": _parse_time(data.get("last_checked_at")) or _utcnow(),
        })


@dataclass
class TokenMetadataEntry:
    network: str
    contract_address: str
    symbol: str | None = None
    name: str | None = None
    decimals: int | None = None
    logo_url: str | None = None
    source: str = "provider"
    encounter_count: int = 1
    updated_at: datetime = field(default_factory=_utcnow)

    def __post_init__(self):
        self.contract_address = self.contract_address.lower()

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TokenMetadataEntry:
        return cls(**{**data, "updated_at": _parse_time(data.get("updated_at")) or _utcnow()})
