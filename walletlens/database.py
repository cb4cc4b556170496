"""SQLAlchemy database models and session management.

This module defines the durable token registry: verified tokens, unlisted
tokens, token metadata and network metadata. It uses SQLAlchemy with async
support so registry loads never block the event loop.
"""

from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    Index,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from walletlens.config import get_settings


class Base(DeclarativeBase):
    pass


class VerifiedTokenRecord(Base):
    __tablename__ = "verified_tokens"
    __table_args__ = (UniqueConstraint("network", "contract_address"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    network = Column(String(32), nullable=False, index=True)
    contract_address = Column(String(64), nullable=False)  # Lowercase
    symbol = Column(String(32), nullable=False)
    name = Column(String(200), nullable=False, default="")
    decimals = Column(Integer, nullable=False, default=18)
    logo_url = Column(String(500), nullable=True)
    external_id = Column(String(64), nullable=True)  # Authority id (e.g. CoinMarketCap id)
    standard = Column(String(16), nullable=False, default="ERC20")
    is_native = Column(Boolean, default=False)
    source = Column(String(32), nullable=False, default="coinmarketcap")
    verified_at = Column(DateTime, default=datetime.utcnow)


class UnlistedTokenRecord(Base):
    __tablename__ = "unlisted_tokens"
    __table_args__ = (UniqueConstraint("network", "contract_address"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    network = Column(String(32), nullable=False, index=True)
    contract_address = Column(String(64), nullable=False)
    symbol = Column(String(64), nullable=True)
    name = Column(String(200), nullable=True)
    reason = Column(String(200), nullable=False)
    first_seen_at = Column(DateTime, default=datetime.utcnow)
    last_checked_at = Column(DateTime, default=datetime.utcnow)
    check_count = Column(Integer, default=1)


class TokenMetadataRecord(Base):
    __tablename__ = "token_metadata"
    __table_args__ = (
        UniqueConstraint("network", "contract_address"),
        Index("ix_token_metadata_popularity", "network", "encounter_count"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    network = Column(String(32), nullable=False)
    contract_address = Column(String(64), nullable=False)
    symbol = Column(String(64), nullable=True)
    name = Column(String(200), nullable=True)
    decimals = Column(Integer, nullable=True)
    logo_url = Column(String(500), nullable=True)
    source = Column(String(32), nullable=False, default="provider")
    encounter_count = Column(Integer, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class NetworkMetadataRecord(Base):
    __tablename__ = "network_metadata"

    id = Column(Integer, primary_key=True, autoincrement=True)
    network = Column(String(32), unique=True, nullable=False)
    display_name = Column(String(64), nullable=False)
    logo_url = Column(String(500), nullable=True)


class Database:
    def __init__(self, database_url: str | None = None):
        self.database_url = database_url or get_settings().database_url
        self.engine = create_async_engine(self.database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()
