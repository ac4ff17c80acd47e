from __future__ import annotations

import sys
import logging
import argparse
from pathlib import Path
from typing import List, Tuple
import psycopg2

sys.path.insert(0, str(Path(__file__).parent.parent))
from config.settings import Settings

logger = logging.getLogger(__name__)


MIGRATIONS: List[Tuple[int, str, str]] = [
    (1, "Create schema_migrations table", """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
    """),

    (2, "Create chats and contacts tables", """
        CREATE TABLE IF NOT EXISTS chats (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            external_id TEXT,
            is_group BOOLEAN NOT NULL DEFAULT FALSE,
            last_message_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE TABLE IF NOT EXISTS contacts (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            external_id TEXT,
            display_name TEXT,
            relationship TEXT,
            notes TEXT,
            inferred_name TEXT,
            inferred_relationship TEXT,
            inference_confidence DOUBLE PRECISION,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE (user_id, external_id)
        );
    """),

    (3, "Create messages table", """
        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
            user_id TEXT NOT NULL,
            contact_id TEXT REFERENCES contacts(id) ON DELETE SET NULL,
            content TEXT NOT NULL DEFAULT '',
            from_self BOOLEAN NOT NULL DEFAULT FALSE,
            message_type TEXT NOT NULL DEFAULT 'text',
            media_url TEXT,
            is_deleted BOOLEAN NOT NULL DEFAULT FALSE,
            ts TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_messages_chat_ts
            ON messages(chat_id, is_deleted, ts DESC);
        CREATE INDEX IF NOT EXISTS idx_messages_contact_ts
            ON messages(contact_id, user_id, ts DESC);
    """),

    (4, "Create user_preferences table", """
        CREATE TABLE IF NOT EXISTS user_preferences (
            user_id TEXT PRIMARY KEY,
            tone TEXT,
            response_style TEXT,
            language TEXT,
            personality_traits TEXT[] NOT NULL DEFAULT '{}',
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
    """),

    (5, "Create ai_suggestions table", """
        CREATE TABLE IF NOT EXISTS ai_suggestions (
            id BIGSERIAL PRIMARY KEY,
            request_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            message_type TEXT NOT NULL,
            confidence DOUBLE PRECISION NOT NULL,
            suggestion_count INT NOT NULL DEFAULT 0,
            context_message_count INT NOT NULL DEFAULT 0,
            has_contact_info BOOLEAN NOT NULL DEFAULT FALSE,
            cached BOOLEAN NOT NULL DEFAULT FALSE,
            suggestions JSONB NOT NULL DEFAULT '[]'::jsonb,
            reasoning TEXT,
            selected_index INT,
            feedback TEXT CHECK (feedback IN ('positive', 'negative', 'neutral')),
            custom_response TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            UNIQUE (request_id, user_id)
        );

        CREATE INDEX IF NOT EXISTS idx_ai_suggestions_user_created
            ON ai_suggestions(user_id, created_at DESC);
    """),

    (6, "Create contact_inferences table", """
        CREATE TABLE IF NOT EXISTS contact_inferences (
            id BIGSERIAL PRIMARY KEY,
            contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
            user_id TEXT NOT NULL,
            inferred_name TEXT,
            inferred_relationship TEXT,
            confidence DOUBLE PRECISION NOT NULL,
            message_count INT NOT NULL DEFAULT 0,
            signals TEXT[] NOT NULL DEFAULT '{}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_contact_inferences_contact
            ON contact_inferences(contact_id, created_at DESC);
    """),

    (7, "Create promises table", """
        CREATE TABLE IF NOT EXISTS promises (
            id BIGSERIAL PRIMARY KEY,
            message_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            type TEXT NOT NULL CHECK (type IN ('commitment', 'deadline', 'appointment', 'task')),
            content TEXT NOT NULL,
            deadline TIMESTAMPTZ,
            priority TEXT NOT NULL DEFAULT 'medium' CHECK (priority IN ('low', 'medium', 'high')),
            confidence DOUBLE PRECISION NOT NULL,
            from_self BOOLEAN NOT NULL DEFAULT FALSE,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );

        CREATE INDEX IF NOT EXISTS idx_promises_user_status
            ON promises(user_id, status, deadline);
    """),

    (8, "Create job_queue and job_queue_state tables", """
        CREATE TABLE IF NOT EXISTS job_queue (
            id BIGSERIAL PRIMARY KEY,
            queue TEXT NOT NULL,
            payload JSONB NOT NULL,
            priority INT NOT NULL DEFAULT 1,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending', 'active', 'completed', 'failed')),
            attempts INT NOT NULL DEFAULT 0,
            max_attempts INT NOT NULL DEFAULT 3,
            backoff_base_seconds DOUBLE PRECISION NOT NULL DEFAULT 2.0,
            backoff_exponential BOOLEAN NOT NULL DEFAULT TRUE,
            run_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            leased_at TIMESTAMPTZ,
            last_error TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            finished_at TIMESTAMPTZ
        );

        CREATE INDEX IF NOT EXISTS idx_job_queue_runnable
            ON job_queue(queue, status, priority, run_at);
        CREATE INDEX IF NOT EXISTS idx_job_queue_finished
            ON job_queue(queue, status, finished_at DESC);

        CREATE TABLE IF NOT EXISTS job_queue_state (
            queue TEXT PRIMARY KEY,
            paused BOOLEAN NOT NULL DEFAULT FALSE,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
    """),
]


def get_connection(settings: Settings):
    return psycopg2.connect(settings.postgres_dsn)


def get_applied_versions(conn) -> set:
    cur = conn.cursor()
    try:
        cur.execute("SELECT version FROM schema_migrations ORDER BY version")
        return {row[0] for row in cur.fetchall()}
    except psycopg2.errors.UndefinedTable:
        conn.rollback()
        return set()
    finally:
        cur.close()


def apply_migration(conn, version: int, description: str, sql: str) -> bool:
    cur = conn.cursor()
    try:
        logger.info("Applying migration v%d: %s", version, description)
        cur.execute(sql)
        cur.execute(
            "INSERT INTO schema_migrations (version, description) VALUES (%s, %s)",
            (version, description),
        )
        conn.commit()
        logger.info("Migration v%d applied", version)
        return True
    except psycopg2.Error as e:
        conn.rollback()
        logger.error("Migration v%d failed: %s", version, e, exc_info=True)
        return False
    finally:
        cur.close()


def run_migrations(settings: Settings) -> int:
    logger.info("Starting database migrations")
    dsn = settings.postgres_dsn
    if settings.POSTGRES_PASSWORD:
        dsn = dsn.replace(settings.POSTGRES_PASSWORD, "***")
    logger.info("DSN: %s", dsn)

    conn = get_connection(settings)
    conn.autocommit = False

    try:
        applied = get_applied_versions(conn)
        pending = [(v, d, s) for v, d, s in MIGRATIONS if v not in applied]

        if not pending:
            logger.info("Database is up to date. No migrations needed.")
            return 0

        logger.info("Found %d pending migration(s)", len(pending))
        success_count = 0
        for version, description, sql in pending:
            if not apply_migration(conn, version, description, sql):
                logger.error("Migration stopped at v%d. Fix the error and retry.", version)
                break
            success_count += 1

        logger.info("Applied %d/%d migration(s)", success_count, len(pending))
        return success_count
    finally:
        conn.close()


def show_status(settings: Settings) -> None:
    conn = get_connection(settings)
    try:
        applied = get_applied_versions(conn)
        for version, description, _ in MIGRATIONS:
            status = "applied" if version in applied else "pending"
            logger.info("v%d [%s]: %s", version, status, description)
        logger.info("Total: %d/%d applied", len(applied), len(MIGRATIONS))
    finally:
        conn.close()


def reset_database(settings: Settings) -> None:
    logger.warning("WARNING: This will DROP ALL TABLES!")
    confirm = input("Type 'yes' to confirm: ")
    if confirm.lower() != "yes":
        logger.info("Reset aborted by user")
        return

    conn = get_connection(settings)
    conn.autocommit = True
    cur = conn.cursor()
    try:
        cur.execute("SELECT tablename FROM pg_tables WHERE schemaname = 'public'")
        tables = [row[0] for row in cur.fetchall()]
        logger.info("Dropping %d tables...", len(tables))
        for table in tables:
            cur.execute(f'DROP TABLE IF EXISTS "{table}" CASCADE')
    finally:
        cur.close()
        conn.close()

    run_migrations(settings)


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    parser = argparse.ArgumentParser(description="Reply suggestion database migrations")
    parser.add_argument("--status", action="store_true", help="Show migration status")
    parser.add_argument("--reset", action="store_true", help="Drop all tables and re-apply (DANGEROUS!)")
    args = parser.parse_args()

    settings = Settings()

    if args.status:
        show_status(settings)
    elif args.reset:
        reset_database(settings)
    else:
        run_migrations(settings)


if __name__ == "__main__":
    main()
