"""DI Container - reply suggestion pipeline with Redis cache + Postgres job queues."""

import logging
from dependency_injector import containers, providers

from config.settings import Settings

logger = logging.getLogger(__name__)


def _job_store(s):
    mod = __import__("db.postgres_job_store", fromlist=["PostgresJobStore", "BackoffPolicy"])
    return mod.PostgresJobStore(
        dsn=s.postgres_url,
        max_attempts=s.JOB_MAX_ATTEMPTS,
        backoff=mod.BackoffPolicy(base_delay_seconds=s.JOB_BACKOFF_BASE_SECONDS),
        keep_completed=s.JOB_KEEP_COMPLETED,
        keep_failed=s.JOB_KEEP_FAILED,
    )


def _job_worker(queue: str, jobs, handlers, s):
    return __import__("scheduler.job_worker", fromlist=["JobWorker"]).JobWorker(
        queue=queue,
        job_store=jobs,
        handler=handlers.for_queue(queue),
        settings=s,
    )


class Container(containers.DeclarativeContainer):
    """Application DI container with Redis, Postgres and OpenAI wiring."""

    wiring_config = containers.WiringConfiguration(
        modules=[
            "api.routers.suggestions",
            "api.routers.ingestion",
            "api.routers.queues",
        ]
    )

    # Settings
    settings = providers.Singleton(Settings)

    # Clients
    redis_client = providers.Singleton(
        lambda s: __import__("redis.asyncio", fromlist=["Redis"]).Redis.from_url(
            s.REDIS_URL,
            decode_responses=True,
        ),
        s=settings,
    )

    openai_client = providers.Singleton(
        lambda s: __import__("openai", fromlist=["AsyncOpenAI"]).AsyncOpenAI(
            api_key=s.OPENAI_API_KEY,
            base_url=s.OPENAI_BASE_URL if s.OPENAI_BASE_URL else None,
        ),
        s=settings,
    )

    # =========================================================================
    # Stores
    # =========================================================================

    # Chat data written by the transport integration (read side)
    message_store = providers.Singleton(
        lambda s: __import__(
            "db.postgres_message_store", fromlist=["PostgresMessageStore"]
        ).PostgresMessageStore(dsn=s.postgres_url),
        s=settings,
    )

    suggestion_store = providers.Singleton(
        lambda s: __import__(
            "db.postgres_suggestion_store", fromlist=["PostgresSuggestionStore"]
        ).PostgresSuggestionStore(dsn=s.postgres_url),
        s=settings,
    )

    promise_store = providers.Singleton(
        lambda s: __import__(
            "db.postgres_promise_store", fromlist=["PostgresPromiseStore"]
        ).PostgresPromiseStore(dsn=s.postgres_url),
        s=settings,
    )

    job_store = providers.Singleton(_job_store, s=settings)

    response_cache = providers.Singleton(
        lambda redis, s: __import__(
            "db.response_cache", fromlist=["ResponseCache"]
        ).ResponseCache(
            redis,
            base_ttl_seconds=s.CACHE_BASE_TTL_SECONDS,
            key_prefix=s.CACHE_KEY_PREFIX,
        ),
        redis=redis_client,
        s=settings,
    )

    # =========================================================================
    # Generation pipeline
    # =========================================================================

    context_builder = providers.Singleton(
        lambda store, s: __import__(
            "orchestrator.context_builder", fromlist=["ContextBuilder"]
        ).ContextBuilder(store, max_messages=s.CONTEXT_MAX_MESSAGES),
        store=message_store,
        s=settings,
    )

    prompt_templates = providers.Singleton(
        lambda: __import__(
            "orchestrator.prompt_templates", fromlist=["PromptTemplates"]
        ).PromptTemplates(),
    )

    response_safety = providers.Singleton(
        lambda: __import__(
            "guardrail.response_safety", fromlist=["ResponseSafety"]
        ).ResponseSafety(),
    )

    response_generator = providers.Singleton(
        lambda client, cache, builder, templates, safety, store, s: __import__(
            "orchestrator.response_generator", fromlist=["ResponseGenerator"]
        ).ResponseGenerator(
            openai_client=client,
            cache=cache,
            context_builder=builder,
            templates=templates,
            safety=safety,
            suggestion_store=store,
            settings=s,
        ),
        client=openai_client,
        cache=response_cache,
        builder=context_builder,
        templates=prompt_templates,
        safety=response_safety,
        store=suggestion_store,
        s=settings,
    )

    # =========================================================================
    # Background analysis
    # =========================================================================

    promise_detector = providers.Singleton(
        lambda store, client, s: __import__(
            "orchestrator.promise_detector", fromlist=["PromiseDetector"]
        ).PromiseDetector(
            promise_store=store,
            openai_client=client,
            settings=s,
        ),
        store=promise_store,
        client=openai_client,
        s=settings,
    )

    contact_inference = providers.Singleton(
        lambda store: __import__(
            "orchestrator.contact_inference", fromlist=["ContactInference"]
        ).ContactInference(store),
        store=message_store,
    )

    job_handlers = providers.Singleton(
        lambda generator, promises, contacts, messages: __import__(
            "orchestrator.job_handlers", fromlist=["JobHandlers"]
        ).JobHandlers(
            response_generator=generator,
            promise_detector=promises,
            contact_inference=contacts,
            message_store=messages,
        ),
        generator=response_generator,
        promises=promise_detector,
        contacts=contact_inference,
        messages=message_store,
    )

    dispatcher = providers.Singleton(
        lambda jobs, s: __import__(
            "orchestrator.dispatcher", fromlist=["IngestionDispatcher"]
        ).IngestionDispatcher(jobs, settings=s),
        jobs=job_store,
        s=settings,
    )

    # =========================================================================
    # Workers & schedulers
    # =========================================================================

    # One worker per queue - started in main.py lifespan
    response_worker = providers.Singleton(
        _job_worker, "response", jobs=job_store, handlers=job_handlers, s=settings,
    )
    promise_worker = providers.Singleton(
        _job_worker, "promise-detection", jobs=job_store, handlers=job_handlers, s=settings,
    )
    contact_inference_worker = providers.Singleton(
        _job_worker, "contact-inference", jobs=job_store, handlers=job_handlers, s=settings,
    )
    media_worker = providers.Singleton(
        _job_worker, "media", jobs=job_store, handlers=job_handlers, s=settings,
    )

    job_workers = providers.List(
        response_worker,
        promise_worker,
        contact_inference_worker,
        media_worker,
    )

    cache_cleanup_scheduler = providers.Singleton(
        lambda cache, s: __import__(
            "scheduler.cache_cleanup_scheduler", fromlist=["CacheCleanupScheduler"]
        ).CacheCleanupScheduler(cache, settings=s),
        cache=response_cache,
        s=settings,
    )

    # =========================================================================
    # Services
    # =========================================================================

    suggestion_service = providers.Factory(
        lambda generator, cache: __import__(
            "service.suggestion_service", fromlist=["SuggestionService"]
        ).SuggestionService(generator=generator, cache=cache),
        generator=response_generator,
        cache=response_cache,
    )

    queue_admin_service = providers.Factory(
        lambda jobs: __import__(
            "service.queue_admin_service", fromlist=["QueueAdminService"]
        ).QueueAdminService(job_store=jobs),
        jobs=job_store,
    )
