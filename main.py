
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routers.suggestions import router as suggestions_router
from api.routers.ingestion import router as ingestion_router
from api.routers.queues import router as queues_router
from config.container import Container
from db.shared_pool import SharedPostgresPool

from observability.phoenix_setup import init_phoenix_tracing, shutdown_tracing
from observability.metrics import setup_prometheus_metrics

logger = logging.getLogger(__name__)

container = Container()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = container.settings()

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper()),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if settings.TRACING_ENABLED:
        tracing_enabled = init_phoenix_tracing(
            service_name="reply-suggestion-agent",
            phoenix_endpoint=settings.PHOENIX_ENDPOINT,
            enable_openai=True,
        )
        if tracing_enabled:
            logger.info("application:startup:phoenix_tracing_enabled ✓")
        else:
            logger.warning("application:startup:phoenix_tracing_disabled (check Phoenix connection)")

    container.wire(
        modules=[
            "api.routers.suggestions",
            "api.routers.ingestion",
            "api.routers.queues",
        ]
    )

    SharedPostgresPool.configure(
        min_size=settings.POSTGRES_POOL_MIN_SIZE,
        max_size=settings.POSTGRES_POOL_MAX_SIZE,
    )

    logger.info("=" * 70)
    logger.info("🤖 LLM Configuration:")
    logger.info("-" * 70)
    logger.info(f"  💬 RESPONSE:            {settings.RESPONSE_MODEL:<25} temp={settings.RESPONSE_TEMPERATURE}")
    logger.info(f"  📌 PROMISES:            {settings.PROMISE_MODEL:<25} enabled={settings.PROMISE_AI_DETECTION_ENABLED}")
    logger.info("-" * 70)
    logger.info(f"  🗄️  CACHE:               base_ttl={settings.CACHE_BASE_TTL_SECONDS}s single_flight={settings.SINGLE_FLIGHT_ENABLED}")
    logger.info("=" * 70)

    workers = []
    cache_cleanup = None

    try:
        if settings.WORKERS_ENABLED:
            for worker in container.job_workers():
                await worker.start()
                workers.append(worker)
            logger.info(f"application:startup:job_workers_started ✓ count={len(workers)}")

        cache_cleanup = container.cache_cleanup_scheduler()
        await cache_cleanup.start()
        logger.info("application:startup:cache_cleanup_scheduler_started ✓")
    except Exception as e:
        logger.error(f"application:startup:scheduler_failed: {e}", exc_info=True)

    logger.info("application:startup:complete")

    yield

    logger.info("application:shutdown:start")

    try:
        for worker in workers:
            await worker.stop()
        logger.info("application:shutdown:job_workers_stopped")
        if cache_cleanup:
            await cache_cleanup.stop()
            logger.info("application:shutdown:cache_cleanup_scheduler_stopped")
    except Exception as e:
        logger.error(f"application:shutdown:scheduler_stop_failed: {e}", exc_info=True)

    try:
        await container.redis_client().aclose()
        await SharedPostgresPool.close()
        logger.info("application:shutdown:connections_closed")
    except Exception as e:
        logger.error(f"application:shutdown:close_failed: {e}", exc_info=True)

    shutdown_tracing()
    logger.info("application:shutdown:tracing_stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Reply Suggestion API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.container = container

    setup_prometheus_metrics(
        app,
        app_name="reply_suggestion_agent",
    )
    logger.info("application:create_app:prometheus_metrics_enabled ✓")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(suggestions_router)
    app.include_router(ingestion_router)
    app.include_router(queues_router)

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "message": "Reply Suggestion API is running",
            "observability": {
                "phoenix_ui": "http://localhost:6006",
                "prometheus": "http://localhost:9091",
            },
            "endpoints": [
                "POST /api/v1/responses/generate",
                "POST /api/v1/responses/feedback",
                "GET /api/v1/responses/analytics/{user_id}",
                "GET /api/v1/responses/cache/stats",
                "DELETE /api/v1/responses/cache/{user_id}",
                "POST /api/v1/messages/ingest",
                "GET /api/v1/admin/queues",
                "GET /api/v1/admin/queues/{queue}/failed",
                "POST /api/v1/admin/queues/{queue}/pause",
                "POST /api/v1/admin/queues/{queue}/resume",
                "DELETE /api/v1/admin/queues/{queue}",
                "GET /metrics",
            ],
        }

    return app


app = create_app()
