from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

from prometheus_client import (
    Counter,
    Histogram,
    Gauge,
    Info,
    CollectorRegistry,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY,
)
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

NAMESPACE = "reply_agent"


class ReplyAgentMetrics:

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        # HTTP
        self.http_requests = Counter(
            "http_requests_total",
            "HTTP requests by route template",
            ["method", "route", "status_code"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.http_latency = Histogram(
            "http_request_duration_seconds",
            "HTTP request latency",
            ["method", "route"],
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.sse_streams_open = Gauge(
            "sse_streams_open",
            "Streaming generate responses currently open",
            namespace=NAMESPACE,
            registry=registry,
        )

        # Model
        self.llm_requests = Counter(
            "llm_requests_total",
            "Chat completion calls",
            ["agent", "model", "status"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.llm_tokens = Counter(
            "llm_tokens_total",
            "Tokens consumed by chat completion calls",
            ["agent", "model", "token_type"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.llm_latency = Histogram(
            "llm_request_duration_seconds",
            "Chat completion latency, including streamed calls",
            ["agent", "model"],
            buckets=[0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 15.0, 30.0, 60.0],
            namespace=NAMESPACE,
            registry=registry,
        )

        # Suggestions
        self.suggestions = Counter(
            "suggestions_total",
            "Suggestion sets returned, by where they came from",
            ["message_type", "source"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.suggestion_confidence = Histogram(
            "suggestion_confidence",
            "Confidence of returned suggestion sets",
            buckets=[0.1, 0.3, 0.5, 0.7, 0.8, 0.9, 1.0],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.generation_failures = Counter(
            "generation_failures_total",
            "Failures inside the generation pipeline",
            ["stage", "error_type"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.safety_issues = Counter(
            "safety_issues_total",
            "Issues found on candidate suggestions",
            ["issue", "severity"],
            namespace=NAMESPACE,
            registry=registry,
        )

        # Cache
        self.cache_events = Counter(
            "cache_events_total",
            "Response cache hits, misses, writes and errors",
            ["event"],
            namespace=NAMESPACE,
            registry=registry,
        )

        # Queues
        self.jobs = Counter(
            "jobs_total",
            "Jobs by queue and outcome",
            ["queue", "status"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.job_latency = Histogram(
            "job_duration_seconds",
            "Job handler duration",
            ["queue"],
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            namespace=NAMESPACE,
            registry=registry,
        )

        # Schedulers
        self.scheduler_runs = Counter(
            "scheduler_runs_total",
            "Scheduler runs by outcome",
            ["scheduler", "status"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.scheduler_items = Counter(
            "scheduler_items_total",
            "Items handled by scheduler runs",
            ["scheduler"],
            namespace=NAMESPACE,
            registry=registry,
        )
        self.scheduler_last_run = Gauge(
            "scheduler_last_run_timestamp_seconds",
            "Unix time of the last scheduler run",
            ["scheduler"],
            namespace=NAMESPACE,
            registry=registry,
        )

        self.build = Info("build", "Service build information", namespace=NAMESPACE, registry=registry)


metrics = ReplyAgentMetrics()


def _route_label(request: Request) -> str:
    # Route template keeps label cardinality bounded (/analytics/{user_id})
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


class PrometheusMiddleware(BaseHTTPMiddleware):

    def __init__(self, app, metrics: ReplyAgentMetrics):
        super().__init__(app)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        started = time.perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            route = _route_label(request)
            self.metrics.http_requests.labels(
                method=request.method, route=route, status_code=status_code
            ).inc()
            self.metrics.http_latency.labels(method=request.method, route=route).observe(
                time.perf_counter() - started
            )


def setup_prometheus_metrics(
    app: FastAPI,
    app_name: str = "reply_suggestion_agent",
    app_version: str = "1.0.0",
) -> ReplyAgentMetrics:
    metrics.build.info({
        "name": app_name,
        "version": app_version,
        "environment": os.getenv("APP_ENV", "development"),
    })

    app.add_middleware(PrometheusMiddleware, metrics=metrics)

    @app.get("/metrics", include_in_schema=False)
    async def prometheus_metrics():
        return Response(content=generate_latest(metrics.registry), media_type=CONTENT_TYPE_LATEST)

    logger.info("prometheus_metrics:setup:complete ✓")
    return metrics


def record_llm_request(agent: str, model: str, status: str, duration_seconds: float) -> None:
    metrics.llm_requests.labels(agent=agent, model=model, status=status).inc()
    metrics.llm_latency.labels(agent=agent, model=model).observe(duration_seconds)


def record_llm_usage(agent: str, model: str, prompt_tokens: int, completion_tokens: int) -> None:
    metrics.llm_tokens.labels(agent=agent, model=model, token_type="prompt").inc(prompt_tokens)
    metrics.llm_tokens.labels(agent=agent, model=model, token_type="completion").inc(completion_tokens)


def record_suggestion_result(message_type: str, source: str, confidence: float) -> None:
    """``source`` is one of model, cache, coalesced or degraded."""
    metrics.suggestions.labels(message_type=message_type, source=source).inc()
    metrics.suggestion_confidence.observe(confidence)


def record_generation_failure(stage: str, error_type: str) -> None:
    metrics.generation_failures.labels(stage=stage, error_type=error_type).inc()


def record_cache_event(event: str) -> None:
    metrics.cache_events.labels(event=event).inc()


def record_safety_issue(issue: str, severity: str) -> None:
    metrics.safety_issues.labels(issue=issue, severity=severity).inc()


def record_job(queue: str, status: str, duration_seconds: Optional[float] = None) -> None:
    metrics.jobs.labels(queue=queue, status=status).inc()
    if duration_seconds is not None:
        metrics.job_latency.labels(queue=queue).observe(duration_seconds)


def record_scheduler_run(scheduler: str, status: str, items_processed: int) -> None:
    metrics.scheduler_runs.labels(scheduler=scheduler, status=status).inc()
    metrics.scheduler_items.labels(scheduler=scheduler).inc(items_processed)
    metrics.scheduler_last_run.labels(scheduler=scheduler).set(time.time())


def track_sse_stream(opened: bool) -> None:
    if opened:
        metrics.sse_streams_open.inc()
    else:
        metrics.sse_streams_open.dec()
