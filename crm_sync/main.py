"""
FastAPI application with database pool, Redis and offline sync lifecycle management.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from crm_sync.config import Settings, settings
from crm_sync.db.pool import DatabasePoolManager
from crm_sync.features.offline_sync import (
    LeaderElector,
    MutationQueue,
    PostgresRemoteStore,
    RedisBroadcastChannel,
    SqliteLeaseStore,
    SyncEngine,
    SyncEventBus,
)
from crm_sync.infrastructure.observability.logging import get_logger, setup_logging
from crm_sync.routes import health, matching, sync
from crm_sync.services.infrastructure.redis_client import RedisClient

logger = get_logger(__name__)


def build_sync_engine(config: Settings, queue: MutationQueue, pool: DatabasePoolManager) -> SyncEngine:
    return SyncEngine(
        queue,
        PostgresRemoteStore(pool),
        events=SyncEventBus(),
        batch_size=config.SYNC_BATCH_SIZE,
        max_retries=config.SYNC_MAX_RETRIES,
        base_backoff_s=config.SYNC_BASE_BACKOFF_SECONDS,
        max_backoff_s=config.SYNC_MAX_BACKOFF_SECONDS,
        synced_retention_s=config.SYNCED_RETENTION_HOURS * 3600,
        failed_retention_s=config.FAILED_RETENTION_HOURS * 3600,
        max_entries=config.QUEUE_MAX_ENTRIES,
        max_total_bytes=config.QUEUE_MAX_TOTAL_BYTES,
    )


def build_leader_elector(
    config: Settings, engine: SyncEngine, redis_client: RedisClient | None
) -> LeaderElector:
    """Broadcast election over Redis pub/sub when available, otherwise a SQLite lease."""
    common = dict(
        claim_window_s=config.LEADER_CLAIM_WINDOW_SECONDS,
        heartbeat_interval_s=config.LEADER_HEARTBEAT_SECONDS,
        lease_ttl_s=config.LEADER_LEASE_TTL_SECONDS,
        maintenance=engine.run_maintenance,
        maintenance_interval_s=config.MAINTENANCE_INTERVAL_SECONDS,
    )
    if redis_client is not None:
        return LeaderElector(channel=RedisBroadcastChannel(redis_client, config.LEADER_CHANNEL), **common)
    return LeaderElector(lease_store=SqliteLeaseStore(config.OFFLINE_DB_PATH, key=config.LEADER_CHANNEL), **common)


def make_lifespan(config: Settings):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open every resource in order and close them in reverse."""
        logger.info("Application starting", environment=config.environment, debug=config.debug)

        db_pool = DatabasePoolManager(config.SUPABASE_DB_URL, config.get_db_pool_config())
        redis_client = RedisClient(config.REDIS_URL) if config.REDIS_ENABLED else None
        queue = MutationQueue(config.OFFLINE_DB_PATH)
        startup_tasks = []

        try:
            logger.info("Initializing database pool")
            await db_pool.initialize()
            startup_tasks.append("database_pool")

            if redis_client is not None:
                logger.info("Initializing Redis connection")
                await redis_client.initialize()
                startup_tasks.append("redis")
            else:
                logger.warning("Redis disabled, leader election falls back to the SQLite lease")

            await queue.open()
            startup_tasks.append("queue")
            recovered = await queue.recover_interrupted()
            if recovered:
                logger.warning("Recovered interrupted queue items", count=recovered)

            engine = build_sync_engine(config, queue, db_pool)
            elector = build_leader_elector(config, engine, redis_client)
            engine.elector = elector
            engine.attach()
            await elector.start()
            startup_tasks.append("sync_engine")

            logger.info("All services initialized successfully", services=startup_tasks)

        except Exception as e:
            logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)
            if "queue" in startup_tasks:
                await queue.close()
            if "redis" in startup_tasks:
                await redis_client.close()
            if "database_pool" in startup_tasks:
                await db_pool.close()
            raise

        app.state.db_pool = db_pool
        app.state.redis = redis_client
        app.state.queue = queue
        app.state.sync_engine = engine

        yield

        logger.info("Application shutting down")
        shutdown_errors = []

        # Release leadership first so another process can take over promptly
        for name, close in (
            ("leader_elector", elector.stop),
            ("sync_engine", engine.stop),
            ("queue", queue.close),
            ("redis", redis_client.close if redis_client is not None else None),
            ("database_pool", db_pool.close),
        ):
            if close is None:
                continue
            try:
                await close()
            except Exception as e:
                logger.error("Error during shutdown", component=name, error=str(e))
                shutdown_errors.append(f"{name}: {e}")

        if shutdown_errors:
            logger.warning("Some services had shutdown errors", errors=shutdown_errors)
        else:
            logger.info("All services closed successfully")

    return lifespan


def create_app(config: Settings | None = None, lifespan=None) -> FastAPI:
    config = config or settings
    application = FastAPI(
        title="CRM Sync",
        description="Offline mutation sync and Gmail requirement matching",
        version="0.1.0",
        lifespan=lifespan or make_lifespan(config),
    )

    application.include_router(health.router)
    application.include_router(sync.router)
    application.include_router(matching.router)

    @application.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000

        logger.info(
            "HTTP request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(process_time, 2),
        )
        return response

    return application


setup_logging(log_level=settings.LOG_LEVEL)
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
