from __future__ import annotations

import sys
import logging
from pathlib import Path

import psycopg2
import redis

sys.path.insert(0, str(Path(__file__).parent.parent))
from config.settings import Settings
from scripts.migrations import run_migrations

logger = logging.getLogger(__name__)


def init_postgres(settings: Settings) -> None:
    logger.info("Initializing PostgreSQL...")
    run_migrations(settings)


def check_redis(settings: Settings) -> None:
    logger.info("Checking Redis at %s ...", settings.REDIS_URL)
    client = redis.Redis.from_url(settings.REDIS_URL)
    try:
        client.ping()
        info = client.info("memory")
        logger.info("Redis reachable (used_memory: %s)", info.get("used_memory_human", "unknown"))
    finally:
        client.close()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    logger.info("=" * 60)
    logger.info("Reply Suggestion Agent - storage initialization")
    logger.info("=" * 60)

    settings = Settings()

    try:
        init_postgres(settings)
        check_redis(settings)

        logger.info("=" * 60)
        logger.info("Storage ready")
        logger.info("  - Postgres: chats, contacts, messages, user_preferences, ai_suggestions,")
        logger.info("              contact_inferences, promises, job_queue, job_queue_state")
        logger.info("  - Redis: response cache (%s*)", settings.CACHE_KEY_PREFIX)
        logger.info("Next: uvicorn main:app --reload")
    except (psycopg2.Error, redis.RedisError, OSError) as e:
        logger.error("Initialization failed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
