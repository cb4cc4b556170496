"""Main entry point for walletlens.

This module wires and runs the service components:
- Registry database initialization
- Layered cache (in-process + Redis)
- Prometheus metrics and health server
- Background token metadata writers

Usage:
    python -m walletlens.main
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import List

from aiohttp import web

from walletlens.clients.alchemy import AlchemyClient
from walletlens.clients.base import HttpClient
from walletlens.clients.coinmarketcap import CoinMarketCapClient
from walletlens.clients.moralis import MoralisClient
from walletlens.clients.zerion import ZerionClient
from walletlens.config import Settings, get_settings
from walletlens.core.enrichment import PriceEnrichmentService
from walletlens.core.portfolio import PortfolioService
from walletlens.core.wallet import WalletService
from walletlens.database import Database
from walletlens.providers.base import PositionProvider
from walletlens.providers.moralis import MoralisProvider
from walletlens.providers.zerion import ZerionProvider
from walletlens.repositories.metadata import TokenMetadataRepository
from walletlens.repositories.network_metadata import NetworkMetadataRepository
from walletlens.repositories.store import RegistryStore
from walletlens.repositories.unlisted import UnlistedTokenRepository
from walletlens.repositories.verified import VerifiedTokenRepository
from walletlens.services.cache import CacheStore, DistributedCache
from walletlens.services.metrics import get_content_type, get_metrics
from walletlens.services.pricing import PriceService
from walletlens.services.token_metadata import TokenMetadataService
from walletlens.services.verification import TokenVerificationService
from walletlens.services.write_queue import MetadataWriteWorker, TokenMetadataQueue

logger = logging.getLogger(__name__)


@dataclass
class Services:
    database: Database
    cache: CacheStore
    queue: TokenMetadataQueue
    metadata_repository: TokenMetadataRepository
    portfolio: PortfolioService
    wallet: WalletService
    http_clients: List[HttpClient]

    async def close(self):
        self.queue.close()
        for client in self.http_clients:
            await client.close()
        await self.cache.distributed.close()
        await self.database.close()


def _require(value: str | None, name: str) -> str:
    if not value:
        raise RuntimeError(f"{name} must be set")
    return value


def create_provider(settings: Settings, clients: List[HttpClient]) -> PositionProvider:
    if settings.position_provider == "moralis":
        client = MoralisClient(_require(settings.moralis_api_key, "MORALIS_API_KEY"), settings.http_timeout_seconds)
        clients.append(client)
        return MoralisProvider(client)
    client = ZerionClient(_require(settings.zerion_api_key, "ZERION_API_KEY"), settings.http_timeout_seconds)
    clients.append(client)
    return ZerionProvider(client)


def create_services(settings: Settings) -> Services:
    """Build the pipeline. Every shared cache and lock lives on these instances."""
    database = Database(settings.database_url)
    store = RegistryStore(database)
    cache = CacheStore(DistributedCache.from_url(settings.redis_url), enabled=settings.cache_enabled)

    clients: List[HttpClient] = []
    alchemy = AlchemyClient(_require(settings.alchemy_api_key, "ALCHEMY_API_KEY"), settings.http_timeout_seconds)
    coinmarketcap = CoinMarketCapClient(
        _require(settings.coinmarketcap_api_key, "COINMARKETCAP_API_KEY"), settings.http_timeout_seconds
    )
    clients.extend([alchemy, coinmarketcap])

    verified = VerifiedTokenRepository(store, cache, settings.verified_tokens_ttl_seconds)
    unlisted = UnlistedTokenRepository(store, cache, settings.unlisted_tokens_ttl_seconds)
    metadata_repository = TokenMetadataRepository(store, cache, settings.token_metadata_ttl_seconds)

    queue = TokenMetadataQueue(
        capacity=settings.write_queue_capacity,
        latency_warning_seconds=settings.write_queue_latency_warning_seconds,
    )
    token_metadata = TokenMetadataService(
        metadata_repository,
        queue,
        client=alchemy,
        max_concurrency=settings.metadata_fetch_concurrency,
        fetch_timeout_seconds=settings.metadata_fetch_timeout_seconds,
    )
    pricing = PriceService(
        alchemy,
        cache,
        price_ttl_seconds=settings.price_ttl_seconds,
        max_networks_per_batch=settings.prices_max_networks_per_batch,
        native_price_proxies=settings.native_price_proxies,
        cache_concurrency=settings.cache_operation_concurrency,
    )
    enrichment = PriceEnrichmentService(TokenVerificationService(verified, unlisted, coinmarketcap), pricing)

    provider = create_provider(settings, clients)
    network_metadata = NetworkMetadataRepository(store)
    portfolio = PortfolioService(
        provider=provider,
        enrichment=enrichment,
        network_metadata=network_metadata,
        token_metadata=token_metadata,
        fallback_ttl_seconds=settings.portfolio_fallback_ttl_seconds,
    )
    wallet = WalletService(
        provider=provider,
        enrichment=enrichment,
        network_metadata=network_metadata,
        token_metadata=token_metadata,
    )
    return Services(
        database=database,
        cache=cache,
        queue=queue,
        metadata_repository=metadata_repository,
        portfolio=portfolio,
        wallet=wallet,
        http_clients=clients,
    )


async def metrics_handler(_request: web.Request) -> web.Response:
    """Prometheus metrics endpoint."""
    # aiohttp rejects a charset inside content_type, so pass the header as-is
    return web.Response(
        body=get_metrics(),
        headers={"Content-Type": get_content_type()},
    )


async def health_handler(request: web.Request) -> web.Response:
    """Health check endpoint."""
    queue: TokenMetadataQueue = request.app["queue"]
    cache: CacheStore = request.app["cache"]
    return web.json_response({
        "status": "healthy",
        "write_queue_depth": queue.count,
        "write_queue_dropped": queue.dropped_count,
        "cache": cache.memory.get_stats(),
    })


async def run_metrics_server(
    queue: TokenMetadataQueue,
    cache: CacheStore,
    host: str = "0.0.0.0",
    port: int = 8080,
):
    """Run the metrics HTTP server."""
    app = web.Application()
    app["queue"] = queue
    app["cache"] = cache
    app.router.add_get("/metrics", metrics_handler)
    app.router.add_get("/health", health_handler)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"Metrics server running on http://{host}:{port}/metrics")
    return runner


async def main():
    settings = get_settings()
    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=settings.log_level.upper(),
    )
    logger.info("Starting walletlens...")

    services = create_services(settings)
    await services.database.init_db()
    logger.info("Database initialized")

    metrics_runner = await run_metrics_server(services.queue, services.cache, port=settings.metrics_port)

    writer_tasks = [
        asyncio.create_task(
            MetadataWriteWorker(
                services.queue,
                services.metadata_repository,
                max_retries=settings.write_queue_max_retries,
            ).run()
        )
        for _ in range(settings.write_queue_workers)
    ]
    logger.info(f"Started {len(writer_tasks)} metadata writers")

    # Setup graceful shutdown
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("Shutdown signal received")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await shutdown_event.wait()

    # Closing the queue lets writers drain what is pending and exit
    logger.info("Shutting down...")
    services.queue.close()
    await asyncio.gather(*writer_tasks)

    await metrics_runner.cleanup()
    await services.close()

    logger.info("Shutdown complete")


def main_sync():
    asyncio.run(main())


if __name__ == "__main__":
    main_sync()
