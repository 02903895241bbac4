"""StacksGate settlement engine: FastAPI application entry point."""

import signal
from contextlib import asynccontextmanager

# structlog must be configured before any stacksgate module binds a logger
from stacksgate.core.config import get_settings as _get_settings_early
from stacksgate.core.logging import configure_structlog

_boot_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _boot_settings.debug else "INFO",
    json_logs=not _boot_settings.debug,
)

import structlog

from fastapi import FastAPI

from stacksgate.api.errors import register_exception_handlers
from stacksgate.api.routes import api_router
from stacksgate.core.cache import CacheService
from stacksgate.core.config import Settings, get_settings
from stacksgate.core.exceptions import ConfigurationError
from stacksgate.db import close_db, close_redis, get_session_factory, init_db, init_redis
from stacksgate.integrations.chain import CachingChainClient
from stacksgate.integrations.stacks import StacksClient
from stacksgate.middleware.correlation import setup_correlation_middleware
from stacksgate.repositories.memory import (
    InMemoryMerchantDirectory,
    InMemoryPaymentIntentRepository,
    InMemorySBTCTransactionRepository,
    InMemoryWebhookLogRepository,
)
from stacksgate.repositories.sql import (
    SqlMerchantDirectory,
    SqlPaymentIntentRepository,
    SqlSBTCTransactionRepository,
    SqlWebhookLogRepository,
)
from stacksgate.services.monitor import ConfirmationMonitor
from stacksgate.services.payment_intents import PaymentIntentService
from stacksgate.services.rates import RateOracle
from stacksgate.services.settlement import SettlementCoordinator
from stacksgate.services.webhooks import WebhookDispatcher

logger = structlog.get_logger(__name__)


async def _connect_cache(settings: Settings) -> CacheService:
    if not settings.redis_url:
        return CacheService()
    try:
        return CacheService(await init_redis(settings.redis_url))
    except Exception as e:
        logger.warning("redis_unavailable_using_memory_cache", error=str(e), error_type=type(e).__name__)
        return CacheService()


async def _repositories(settings: Settings) -> tuple:
    if settings.storage_backend == "memory":
        logger.info("storage_in_memory")
        return (
            InMemoryPaymentIntentRepository(),
            InMemorySBTCTransactionRepository(),
            InMemoryWebhookLogRepository(),
            InMemoryMerchantDirectory(),
        )

    await init_db(settings.database_url)
    logger.info("db_initialized")
    session_factory = get_session_factory()
    return (
        SqlPaymentIntentRepository(session_factory),
        SqlSBTCTransactionRepository(session_factory),
        SqlWebhookLogRepository(session_factory),
        SqlMerchantDirectory(session_factory),
    )


async def build_services(app: FastAPI, settings: Settings) -> SettlementCoordinator:
    """Construct the engine from settings and hang its parts on ``app.state``."""
    cache = await _connect_cache(settings)
    intents_repo, transactions_repo, webhook_logs, merchants = await _repositories(settings)

    rate_oracle = RateOracle(
        cache,
        ttl_seconds=settings.rate_cache_ttl_seconds,
        trend_ttl_seconds=settings.rate_trend_ttl_seconds,
        fallback_rate=settings.fallback_btc_usd,
        timeout=settings.rate_source_timeout_seconds,
    )

    try:
        chain = CachingChainClient(StacksClient.from_settings(settings), cache)
    except ConfigurationError as e:
        logger.error("chain_client_disabled", reason=str(e))
        chain = None

    payment_intents = PaymentIntentService(
        intents_repo,
        rate_oracle=rate_oracle,
        default_expiry_hours=settings.payment_intent_expiry_hours,
    )
    dispatcher = WebhookDispatcher(
        webhook_logs,
        merchants,
        timeout=settings.webhook_timeout_seconds,
        max_attempts=settings.webhook_max_attempts,
        retry_delays=settings.webhook_retry_delays,
        queue_size=settings.webhook_queue_size,
        workers=settings.webhook_workers,
        retry_batch_limit=settings.webhook_retry_batch_limit,
        retry_window_hours=settings.webhook_retry_window_hours,
        retry_spacing=settings.webhook_retry_spacing_seconds,
    )
    monitor = ConfirmationMonitor(
        transactions_repo,
        payment_intents,
        chain,
        interval_seconds=settings.monitor_interval_seconds,
        lookback_hours=settings.monitor_lookback_hours,
    )
    coordinator = SettlementCoordinator(
        payment_intents,
        transactions_repo,
        chain,
        dispatcher,
        monitor,
        rate_oracle=rate_oracle,
        rate_refresh_interval=settings.rate_refresh_interval_seconds,
        retry_sweep_interval=settings.webhook_retry_sweep_interval_seconds,
    )

    app.state.cache = cache
    app.state.rate_oracle = rate_oracle
    app.state.payment_intents = payment_intents
    app.state.dispatcher = dispatcher
    app.state.coordinator = coordinator
    return coordinator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the background subsystems; on shutdown drain them, then release connections."""
    # /health answers 503 once SIGTERM arrives so the balancer stops routing here
    app.state.shutting_down = False

    def mark_draining(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, mark_draining)

    settings = get_settings()
    logger.info(
        "startup_begin",
        app_name=settings.app_name,
        storage_backend=settings.storage_backend,
        stacks_network=settings.stacks_network,
    )
    coordinator = await build_services(app, settings)
    coordinator.start()

    yield

    logger.info("shutdown_begin")
    await coordinator.stop(timeout=settings.shutdown_timeout_seconds)
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="sBTC payment settlement and notification engine",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    setup_correlation_middleware(app)
    register_exception_handlers(app)
    app.include_router(api_router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("stacksgate.main:app", host="0.0.0.0", port=8000)
