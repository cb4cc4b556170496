"""SQL-backed source of truth for the token registries."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Sequence

from sqlalchemy import delete, select

from walletlens.database import (
    Database,
    NetworkMetadataRecord,
    TokenMetadataRecord,
    UnlistedTokenRecord,
    VerifiedTokenRecord,
)
from walletlens.repositories.entries import TokenMetadataEntry, UnlistedToken, VerifiedToken

logger = logging.getLogger(__name__)


class RegistryStore:
    """Reads and writes registry rows. Callers own caching.

    Verified and unlisted writes share one lock, so the "is it already
    verified" check in `write_unlisted` cannot interleave with a verified
    write from the same process.
    """

    def __init__(self, database: Database):
        self._db = database
        self._registry_write_lock = asyncio.Lock()

    async def load_verified(self, network: str) -> List[VerifiedToken]:
        async with self._db.async_session() as session:
            result = await session.execute(
                select(VerifiedTokenRecord).where(VerifiedTokenRecord.network == network)
            )
            return [
                VerifiedToken(
                    network=row.network,
                    contract_address=row.contract_address,
                    symbol=row.symbol,
                    name=row.name,
                    decimals=row.decimals,
                    logo_url=row.logo_url,
                    external_id=row.external_id,
                    standard=row.standard,
                    is_native=bool(row.is_native),
                    source=row.source,
                    verified_at=row.verified_at,
                )
                for row in result.scalars()
            ]

    async def write_verified(self, entry: VerifiedToken) -> None:
        async with self._registry_write_lock, self._db.async_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(VerifiedTokenRecord).where(
                        VerifiedTokenRecord.network == entry.network,
                        VerifiedTokenRecord.contract_address == entry.contract_address,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = VerifiedTokenRecord(network=entry.network, contract_address=entry.contract_address)
                    session.add(row)
                row.symbol = entry.symbol
                row.name = entry.name
                row.decimals = entry.decimals
                row.logo_url = entry.logo_url
                row.external_id = entry.external_id
                row.standard = entry.standard
                row.is_native = entry.is_native
                row.source = entry.source
                row.verified_at = entry.verified_at
                # A token is never verified and unlisted at once
                await session.execute(
                    delete(UnlistedTokenRecord).where(
                        UnlistedTokenRecord.network == entry.network,
                        UnlistedTokenRecord.contract_address == entry.contract_address,
                    )
                )

    async def load_unlisted(self, network: str) -> List[UnlistedToken]:
        async with self._db.async_session() as session:
            result = await session.execute(
                select(UnlistedTokenRecord).where(UnlistedTokenRecord.network == network)
            )
            return [
                UnlistedToken(
                    network=row.network,
                    contract_address=row.contract_address,
                    reason=row.reason,
                    symbol=row.symbol,
                    name=row.name,
                    first_seen_at=row.first_seen_at,
                    last_checked_at=row.last_checked_at,
                    check_count=row.check_count,
                )
                for row in result.scalars()
            ]

    async def write_unlisted(self, entry: UnlistedToken) -> bool:
        """Insert, or record another check of an existing row.

        Returns False without writing when the token is already verified.
        """
        async with self._registry_write_lock, self._db.async_session() as session:
            async with session.begin():
                verified = await session.execute(
                    select(VerifiedTokenRecord.id).where(
                        VerifiedTokenRecord.network == entry.network,
                        VerifiedTokenRecord.contract_address == entry.contract_address,
                    )
                )
                if verified.first() is not None:
                    return False

                result = await session.execute(
                    select(UnlistedTokenRecord).where(
                        UnlistedTokenRecord.network == entry.network,
                        UnlistedTokenRecord.contract_address == entry.contract_address,
                    )
                )
                row = result.scalar_one_or_none()
                if row is not None:
                    row.last_checked_at = datetime.utcnow()
                    row.check_count = (row.check_count or 0) + 1
                    row.reason = entry.reason or row.reason
                    return True

                session.add(UnlistedTokenRecord(
                    network=entry.network,
                    contract_address=entry.contract_address,
                    symbol=entry.symbol,
                    name=entry.name,
                    reason=entry.reason,
                    first_seen_at=entry.first_seen_at,
                    last_checked_at=entry.last_checked_at,
                    check_count=entry.check_count,
                ))
                return True

    async def record_unlisted_check(self, network: str, address: str) -> bool:
        """Bump last-checked and the check counter; False if the row is missing."""
        async with self._db.async_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(UnlistedTokenRecord).where(
                        UnlistedTokenRecord.network == network,
                        UnlistedTokenRecord.contract_address == address.lower(),
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return False
                row.last_checked_at = datetime.utcnow()
                row.check_count = (row.check_count or 0) + 1
                return True

    async def load_metadata(self, network: str, addresses: Sequence[str]) -> List[TokenMetadataEntry]:
        if not addresses:
            return []
        async with self._db.async_session() as session:
            result = await session.execute(
                select(TokenMetadataRecord).where(
                    TokenMetadataRecord.network == network,
                    TokenMetadataRecord.contract_address.in_([a.lower() for a in addresses]),
                )
            )
            return [self._metadata_entry(row) for row in result.scalars()]

    async def upsert_metadata(self, entry: TokenMetadataEntry) -> TokenMetadataEntry:
        """Insert, or fill in missing fields and count one more encounter."""
        async with self._db.async_session() as session:
            async with session.begin():
                result = await session.execute(
                    select(TokenMetadataRecord).where(
                        TokenMetadataRecord.network == entry.network,
                        TokenMetadataRecord.contract_address == entry.contract_address,
                    )
                )
                row = result.scalar_one_or_none()
                if row is None:
                    row = TokenMetadataRecord(
                        network=entry.network,
                        contract_address=entry.contract_address,
                        symbol=entry.symbol,
                        name=entry.name,
                        decimals=entry.decimals,
                        logo_url=entry.logo_url,
                        source=entry.source,
                        encounter_count=1,
                    )
                    session.add(row)
                else:
                    row.symbol = entry.symbol or row.symbol
                    row.name = entry.name or row.name
                    row.decimals = entry.decimals if entry.decimals is not None else row.decimals
                    row.logo_url = entry.logo_url or row.logo_url
                    row.encounter_count = (row.encounter_count or 0) + 1
                    row.updated_at = datetime.utcnow()
                await session.flush()
                return self._metadata_entry(row)

    async def popular_metadata(self, network: str, limit: int = 100) -> List[TokenMetadataEntry]:
        async with self._db.async_session() as session:
            result = await session.execute(
                select(TokenMetadataRecord)
                .where(TokenMetadataRecord.network == network)
                .order_by(TokenMetadataRecord.encounter_count.desc())
                .limit(limit)
            )
            return [self._metadata_entry(row) for row in result.scalars()]

    async def load_network_logo(self, network: str) -> str | None:
        async with self._db.async_session() as session:
            result = await session.execute(
                select(NetworkMetadataRecord.logo_url).where(NetworkMetadataRecord.network == network)
            )
            return result.scalar_one_or_none()

    async def write_network_metadata(self, network: str, display_name: str, logo_url: str | None) -> None:
        async with self._db.async_session() as session:
            async with session.begin():
                session.add(NetworkMetadataRecord(
                    network=network, display_name=display_name, logo_url=logo_url
                ))

    @staticmethod
    def _metadata_entry(row: TokenMetadataRecord) -> TokenMetadataEntry:
        return TokenMetadataEntry(
            network=row.network,
            contract_address=row.contract_address,
            symbol=row.symbol,
            name=row.name,
            decimals=row.decimals,
            logo_url=row.logo_url,
            source=row.source,
            encounter_count=row.encounter_count or 1,
            updated_at=row.updated_at or datetime.utcnow(),
        )
