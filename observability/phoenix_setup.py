from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.resources import Resource, SERVICE_NAME
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.trace import Status, StatusCode
from openinference.instrumentation.openai import OpenAIInstrumentor

logger = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 2000
MAX_INPUT_CHARS = 500

_provider: Optional[TracerProvider] = None
_tracer: Optional[trace.Tracer] = None
_instrumentor: Optional[OpenAIInstrumentor] = None


def init_phoenix_tracing(
    service_name: str = "reply-suggestion-agent",
    phoenix_endpoint: str = "http://localhost:4317",
    enable_openai: bool = True,
) -> bool:
    """Export spans to Phoenix over OTLP/gRPC. Returns False when the exporter cannot be set up."""
    global _provider, _tracer, _instrumentor

    if _provider is not None:
        logger.warning("phoenix_setup:init:already_initialized")
        return True

    logger.info(
        "phoenix_setup:init:starting",
        extra={"service_name": service_name, "endpoint": phoenix_endpoint},
    )
    try:
        provider = TracerProvider(
            resource=Resource.create({
                SERVICE_NAME: service_name,
                "service.version": "1.0.0",
                "deployment.environment": os.getenv("APP_ENV", "development"),
            })
        )
        provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=phoenix_endpoint, insecure=True),
                max_queue_size=2048,
                max_export_batch_size=512,
            )
        )
        trace.set_tracer_provider(provider)
    except Exception as e:
        logger.error(f"phoenix_setup:init:failed: {e}", exc_info=True)
        return False

    _provider = provider
    _tracer = trace.get_tracer("reply_suggestion_agent")

    if enable_openai:
        _instrumentor = OpenAIInstrumentor()
        _instrumentor.instrument(tracer_provider=provider)
        logger.info("phoenix_setup:init:openai_instrumented ✓")

    logger.info("phoenix_setup:init:complete ✓")
    return True


@contextmanager
def trace_span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Optional[trace.Span]]:
    """Open a child span when tracing is on; a no-op otherwise. Exceptions mark the span as errored."""
    if _tracer is None:
        yield None
        return

    with _tracer.start_as_current_span(name, record_exception=False) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, type(e).__name__))
            raise


def _input_messages_attr(messages: List[Dict[str, Any]]) -> str:
    return json.dumps(
        [
            {"role": str(m.get("role", "")), "content": str(m.get("content", ""))[:MAX_INPUT_CHARS]}
            for m in messages
            if isinstance(m, dict)
        ],
        ensure_ascii=False,
    )


def record_llm_tokens(
    agent_name: str,
    model: str,
    prompt_tokens: int,
    completion_tokens: int,
    input_messages: Optional[List[Dict[str, Any]]] = None,
    output_message: Optional[str] = None,
) -> None:
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attributes({
            "llm.model_name": model,
            "llm.token_count.prompt": prompt_tokens,
            "llm.token_count.completion": completion_tokens,
            "llm.token_count.total": prompt_tokens + completion_tokens,
            "agent.name": agent_name,
        })
        if output_message:
            span.set_attribute("output.value", output_message[:MAX_OUTPUT_CHARS])
        if input_messages:
            span.set_attribute("llm.input_messages", _input_messages_attr(input_messages))

    logger.debug(
        "phoenix:record_tokens",
        extra={
            "agent": agent_name,
            "model": model,
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
        },
    )


def shutdown_tracing() -> None:
    global _provider, _tracer, _instrumentor

    if _provider is None:
        return

    try:
        if _instrumentor is not None:
            _instrumentor.uninstrument()
        _provider.shutdown()
        logger.info("phoenix_setup:shutdown:complete")
    except Exception as e:
        logger.error(f"phoenix_setup:shutdown:error: {e}")
    finally:
        _provider = None
        _tracer = None
        _instrumentor = None
