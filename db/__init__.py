from db.postgres_message_store import PostgresMessageStore
from db.postgres_suggestion_store import PostgresSuggestionStore, SuggestionRecord
from db.postgres_promise_store import PostgresPromiseStore
from db.postgres_job_store import BackoffPolicy, Job, JobStatus, JobType, PostgresJobStore
from db.response_cache import ResponseCache

__all__ = [
    "PostgresMessageStore",
    "PostgresSuggestionStore",
    "SuggestionRecord",
    "PostgresPromiseStore",
    "PostgresJobStore",
    "BackoffPolicy",
    "Job",
    "JobStatus",
    "JobType",
    "ResponseCache",
]
