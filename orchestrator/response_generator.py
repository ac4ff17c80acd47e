from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import httpx
from openai import AsyncOpenAI, OpenAIError

from db.postgres_suggestion_store import SuggestionRecord
from db.response_cache import ResponseCache, fingerprint
from guardrail.response_safety import ResponseSafety
from observability.metrics import (
    record_generation_failure,
    record_llm_request,
    record_llm_usage,
    record_suggestion_result,
)
from observability.phoenix_setup import record_llm_tokens, trace_span
from orchestrator.analytics import summarize_analytics
from orchestrator.context_builder import ContextBuilder, ConversationContext
from orchestrator.exceptions import ModelInvocationError, ModelTimeoutError
from orchestrator.messages import AnalyticsSummary, GeneratedResponse, StreamEvent
from orchestrator.prompt_templates import PromptTemplates, detect_message_type

logger = logging.getLogger(__name__)


AGENT_NAME = "response_generator"

PARSE_FALLBACK_SUGGESTIONS = ["I understand.", "Thanks for sharing that with me."]
PARSE_FALLBACK_CONFIDENCE = 0.5
PARSE_FALLBACK_REASONING = "Fallback response due to parsing error"
MISSING_SUGGESTIONS_DEFAULT = ["I understand.", "Thanks for letting me know."]
DEFAULT_CONFIDENCE = 0.7
MAX_SUGGESTIONS = 3

DEGRADED_CONFIDENCE = 0.3
DEGRADED_REASONING = "Fallback response: model unavailable"


class GenerationStage(str, Enum):
    CACHE_CHECK = "cache_check"
    CONTEXT_BUILD = "context_build"
    PROMPT_BUILD = "prompt_build"
    MODEL_INVOKE = "model_invoke"
    PARSE = "parse"
    SAFETY_FILTER = "safety_filter"
    CACHE_WRITE = "cache_write"
    ANALYTICS_RECORD = "analytics_record"
    DONE = "done"
    FAILED = "failed"


@runtime_checkable
class StreamingSink(Protocol):
    """Receives tokens while the model streams, then exactly one terminal call."""

    cancelled: bool

    async def on_token(self, token: str) -> None: ...

    async def on_complete(self, result: GeneratedResponse) -> None: ...

    async def on_error(self, error: Exception) -> None: ...


class QueueStreamingSink:
    """Sink that turns pipeline callbacks into StreamEvent frames on an asyncio.Queue."""

    def __init__(self) -> None:
        self.queue: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue()
        self.cancelled = False

    async def on_token(self, token: str) -> None:
        await self.queue.put(StreamEvent(type="token", data=token))

    async def on_complete(self, result: GeneratedResponse) -> None:
        await self.queue.put(StreamEvent(type="complete", data=result.model_dump()))
        await self.queue.put(None)

    async def on_error(self, error: Exception) -> None:
        await self.queue.put(StreamEvent(type="error", data=str(error)))
        await self.queue.put(None)

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class ParsedResponse:
    suggestions: List[str] = field(default_factory=list)
    confidence: float = DEFAULT_CONFIDENCE
    reasoning: Optional[str] = None
    is_fallback: bool = False


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def parse_model_output(raw: Optional[str], max_suggestions: int = MAX_SUGGESTIONS) -> ParsedResponse:
    try:
        data = json.loads(raw or "")
    except (json.JSONDecodeError, TypeError):
        data = None

    if not isinstance(data, dict):
        logger.warning(
            "response_generator:parse:fallback",
            extra={"preview": (raw or "")[:100]},
        )
        return ParsedResponse(
            suggestions=list(PARSE_FALLBACK_SUGGESTIONS),
            confidence=PARSE_FALLBACK_CONFIDENCE,
            reasoning=PARSE_FALLBACK_REASONING,
            is_fallback=True,
        )

    raw_suggestions = data.get("suggestions")
    if isinstance(raw_suggestions, list):
        suggestions = [s for s in raw_suggestions if isinstance(s, str)][:max_suggestions]
    else:
        suggestions = list(MISSING_SUGGESTIONS_DEFAULT)

    raw_confidence = data.get("confidence")
    if isinstance(raw_confidence, (int, float)) and not isinstance(raw_confidence, bool):
        confidence = _clamp(float(raw_confidence))
    else:
        confidence = DEFAULT_CONFIDENCE

    reasoning = data.get("reasoning")
    return ParsedResponse(
        suggestions=suggestions,
        confidence=confidence,
        reasoning=reasoning if isinstance(reasoning, str) else None,
    )


class ResponseGenerator:

    def __init__(
        self,
        *,
        openai_client: AsyncOpenAI,
        cache: ResponseCache,
        context_builder: ContextBuilder,
        templates: PromptTemplates,
        safety: ResponseSafety,
        suggestion_store: Any,
        settings: Any = None,
    ) -> None:
        self._client = openai_client
        self._cache = cache
        self._context_builder = context_builder
        self._templates = templates
        self._safety = safety
        self._store = suggestion_store

        self._model = getattr(settings, "RESPONSE_MODEL", "gpt-4-turbo-preview")
        self._temperature = getattr(settings, "RESPONSE_TEMPERATURE", 0.7)
        self._max_tokens = getattr(settings, "RESPONSE_MAX_TOKENS", 500)
        self._timeout = getattr(settings, "RESPONSE_TIMEOUT_SECONDS", 30.0)
        self._suggestion_count = getattr(settings, "RESPONSE_SUGGESTION_COUNT", MAX_SUGGESTIONS)
        self._max_messages = getattr(settings, "CONTEXT_MAX_MESSAGES", 20)
        self._analytics_days = getattr(settings, "ANALYTICS_DEFAULT_DAYS", 7)
        self._single_flight = getattr(settings, "SINGLE_FLIGHT_ENABLED", True)

        self._inflight: Dict[str, "asyncio.Future[GeneratedResponse]"] = {}

    async def generate_response(
        self,
        request_id: str,
        content: str,
        user_id: str,
        chat_type: str = "individual",
        sink: Optional[StreamingSink] = None,
        *,
        raise_on_failure: bool = False,
    ) -> GeneratedResponse:
        try:
            result = await self._generate_once(request_id, content, user_id, chat_type, sink)
        except ModelInvocationError as e:
            self._log_stage(request_id, GenerationStage.FAILED, error=str(e))
            await self._notify(sink, "on_error", e)
            if raise_on_failure:
                raise
            degraded = self._degraded_response(request_id, content)
            record_suggestion_result(degraded.message_type, "degraded", degraded.confidence)
            return degraded
        except Exception as e:
            self._log_stage(request_id, GenerationStage.FAILED, error=str(e))
            await self._notify(sink, "on_error", e)
            raise

        await self._notify(sink, "on_complete", result)
        return result

    async def _generate_once(
        self,
        request_id: str,
        content: str,
        user_id: str,
        chat_type: str,
        sink: Optional[StreamingSink],
    ) -> GeneratedResponse:
        if not self._single_flight:
            return await self._run_pipeline(request_id, content, user_id, chat_type, sink)

        key = fingerprint(content, user_id)
        pending = self._inflight.get(key)
        if pending is not None:
            try:
                shared = await asyncio.shield(pending)
            except asyncio.CancelledError:
                if not pending.cancelled():
                    raise
                return await self._run_pipeline(request_id, content, user_id, chat_type, sink)

            logger.info(
                "response_generator:single_flight:joined",
                extra={"request_id": request_id, "leader_request_id": shared.request_id},
            )
            result = shared.model_copy(update={"request_id": request_id, "cached": True})
            if shared.request_id != request_id:
                await self._record_cache_hit(result, user_id)
            record_suggestion_result(result.message_type, "coalesced", result.confidence)
            return result

        future: "asyncio.Future[GeneratedResponse]" = asyncio.get_running_loop().create_future()
        # Retrieve the exception so leaders without followers do not log "never retrieved"
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight[key] = future
        try:
            result = await self._run_pipeline(request_id, content, user_id, chat_type, sink)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)

    async def _run_pipeline(
        self,
        request_id: str,
        content: str,
        user_id: str,
        chat_type: str,
        sink: Optional[StreamingSink],
    ) -> GeneratedResponse:
        with trace_span(
            "response_generator.generate",
            {"request.id": request_id, "user.id": user_id, "chat.type": chat_type},
        ):
            self._log_stage(request_id, GenerationStage.CACHE_CHECK)
            entry = await self._cache.get(content, user_id)
            if entry is not None:
                result = GeneratedResponse(
                    request_id=request_id,
                    suggestions=entry.suggestions,
                    confidence=entry.confidence,
                    reasoning=entry.reasoning,
                    message_type=entry.message_type,
                    cached=True,
                )
                await self._record_cache_hit(result, user_id)
                record_suggestion_result(result.message_type, "cache", result.confidence)
                self._log_stage(request_id, GenerationStage.DONE, cached=True)
                return result

            self._log_stage(request_id, GenerationStage.CONTEXT_BUILD)
            context = await self._context_builder.build_context(
                request_id, user_id, self._max_messages, chat_type=chat_type
            )
            if chat_type == "group":
                context.metadata.chat_type = "group"

            self._log_stage(request_id, GenerationStage.PROMPT_BUILD)
            message_type = detect_message_type(content)
            system_prompt, user_prompt = self._templates.build_prompt(
                content,
                message_type,
                context,
                ContextBuilder.format_for_prompt(context),
                suggestion_count=self._suggestion_count,
            )
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ]

            self._log_stage(request_id, GenerationStage.MODEL_INVOKE)
            raw = await self._invoke_model(request_id, messages, sink)

            self._log_stage(request_id, GenerationStage.PARSE)
            parsed = parse_model_output(raw, self._suggestion_count)

            self._log_stage(request_id, GenerationStage.SAFETY_FILTER)
            filtered = self._safety.validate_and_filter(
                parsed.suggestions,
                parsed.confidence,
                context,
                user_id=user_id,
            )

            result = GeneratedResponse(
                request_id=request_id,
                suggestions=filtered.suggestions[: self._suggestion_count],
                confidence=_clamp(filtered.confidence),
                reasoning=parsed.reasoning,
                message_type=message_type,
                cached=False,
                safety_issues=filtered.safety_issues,
            )

            self._log_stage(request_id, GenerationStage.CACHE_WRITE)
            await self._cache.set(content, user_id, result)

            self._log_stage(request_id, GenerationStage.ANALYTICS_RECORD)
            await self._record_analytics(
                SuggestionRecord(
                    request_id=request_id,
                    user_id=user_id,
                    message_type=message_type,
                    confidence=result.confidence,
                    suggestion_count=len(result.suggestions),
                    context_message_count=len(context.messages),
                    has_contact_info=context.has_contact_info,
                    cached=False,
                    suggestions=result.suggestions,
                    reasoning=result.reasoning,
                )
            )

            record_suggestion_result(message_type, "model", result.confidence)
            self._log_stage(
                request_id,
                GenerationStage.DONE,
                suggestions=len(result.suggestions),
                confidence=result.confidence,
            )
            return result

    async def _invoke_model(
        self,
        request_id: str,
        messages: List[Dict[str, str]],
        sink: Optional[StreamingSink],
    ) -> str:
        start = time.perf_counter()
        try:
            if sink is None:
                coro = self._complete(messages)
            else:
                coro = self._stream(request_id, messages, sink)
            raw = await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            record_llm_request(AGENT_NAME, self._model, "timeout", time.perf_counter() - start)
            record_generation_failure(GenerationStage.MODEL_INVOKE.value, "timeout")
            raise ModelTimeoutError(
                f"model call exceeded {self._timeout}s", request_id=request_id
            ) from e
        except OpenAIError as e:
            record_llm_request(AGENT_NAME, self._model, "error", time.perf_counter() - start)
            record_generation_failure(GenerationStage.MODEL_INVOKE.value, type(e).__name__)
            logger.error(
                "response_generator:model_invoke:failed",
                extra={"request_id": request_id, "error": str(e)},
            )
            raise ModelInvocationError(str(e), request_id=request_id) from e
        except httpx.HTTPError as e:
            record_llm_request(AGENT_NAME, self._model, "error", time.perf_counter() - start)
            record_generation_failure(GenerationStage.MODEL_INVOKE.value, type(e).__name__)
            logger.error(
                "response_generator:model_invoke:transport_failed",
                extra={"request_id": request_id, "error": str(e)},
            )
            raise ModelInvocationError(str(e), request_id=request_id) from e
        except Exception as e:
            # Malformed responses (no choices, odd chunk shapes) count as model failures
            record_llm_request(AGENT_NAME, self._model, "error", time.perf_counter() - start)
            record_generation_failure(GenerationStage.MODEL_INVOKE.value, type(e).__name__)
            logger.error(
                "response_generator:model_invoke:unexpected_error",
                extra={"request_id": request_id, "error": str(e)},
                exc_info=True,
            )
            raise ModelInvocationError(str(e), request_id=request_id) from e

        record_llm_request(AGENT_NAME, self._model, "success", time.perf_counter() - start)
        return raw

    async def _complete(self, messages: List[Dict[str, str]]) -> str:
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            response_format={"type": "json_object"},
        )
        content = response.choices[0].message.content or ""
        self._record_usage(getattr(response, "usage", None), messages, content)
        return content

    async def _stream(
        self,
        request_id: str,
        messages: List[Dict[str, str]],
        sink: StreamingSink,
    ) -> str:
        stream = await self._client.chat.completions.create(
            model=self._model,
            messages=messages,
            temperature=self._temperature,
            max_tokens=self._max_tokens,
            response_format={"type": "json_object"},
            stream=True,
            stream_options={"include_usage": True},
        )
        parts: List[str] = []
        forwarding = True
        usage = None
        async for chunk in stream:
            if getattr(chunk, "usage", None) is not None:
                usage = chunk.usage
            if not chunk.choices:
                continue
            token = chunk.choices[0].delta.content
            if not token:
                continue
            parts.append(token)
            if not forwarding:
                continue
            if getattr(sink, "cancelled", False):
                forwarding = False
                logger.info(
                    "response_generator:stream:sink_cancelled",
                    extra={"request_id": request_id, "tokens_forwarded": len(parts) - 1},
                )
                continue
            try:
                await sink.on_token(token)
            except Exception as e:
                forwarding = False
                logger.warning(
                    "response_generator:stream:sink_failed",
                    extra={"request_id": request_id, "error": str(e)},
                )

        content = "".join(parts)
        self._record_usage(usage, messages, content)
        return content

    def _record_usage(self, usage: Any, messages: List[Dict[str, str]], output: str) -> None:
        if usage is None:
            return
        prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        completion_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
        record_llm_usage(AGENT_NAME, self._model, prompt_tokens, completion_tokens)
        record_llm_tokens(
            agent_name=AGENT_NAME,
            model=self._model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            input_messages=messages,
            output_message=output,
        )

    def _degraded_response(self, request_id: str, content: str) -> GeneratedResponse:
        return GeneratedResponse(
            request_id=request_id,
            suggestions=[self._safety.fallback_response(None)],
            confidence=DEGRADED_CONFIDENCE,
            reasoning=DEGRADED_REASONING,
            message_type=detect_message_type(content),
            cached=False,
        )

    async def _record_cache_hit(self, result: GeneratedResponse, user_id: str) -> None:
        await self._record_analytics(
            SuggestionRecord(
                request_id=result.request_id,
                user_id=user_id,
                message_type=result.message_type,
                confidence=result.confidence,
                suggestion_count=len(result.suggestions),
                cached=True,
                suggestions=result.suggestions,
                reasoning=result.reasoning,
            )
        )

    async def _record_analytics(self, record: SuggestionRecord) -> None:
        try:
            await self._store.record_suggestion(record)
        except Exception as e:
            record_generation_failure(GenerationStage.ANALYTICS_RECORD.value, type(e).__name__)
            logger.error(
                "response_generator:analytics:failed",
                extra={"request_id": record.request_id, "error": str(e)},
            )

    async def get_analytics(
        self,
        user_id: str,
        date_range: Optional[Tuple[datetime, datetime]] = None,
    ) -> AnalyticsSummary:
        if date_range is None:
            end = datetime.now(timezone.utc)
            start = end - timedelta(days=self._analytics_days)
        else:
            start, end = date_range
        records = await self._store.fetch_records(user_id=user_id, start=start, end=end)
        return summarize_analytics(records)

    async def update_feedback(
        self,
        request_id: str,
        user_id: str,
        selected_index: Optional[int] = None,
        feedback: Optional[str] = None,
        custom_response: Optional[str] = None,
    ) -> bool:
        return await self._store.update_feedback(
            request_id=request_id,
            user_id=user_id,
            selected_index=selected_index,
            feedback=feedback,
            custom_response=custom_response,
        )

    @staticmethod
    async def _notify(sink: Optional[StreamingSink], method: str, payload: Any) -> None:
        if sink is None:
            return
        try:
            await getattr(sink, method)(payload)
        except Exception as e:
            logger.warning(
                "response_generator:sink_notify_failed",
                extra={"method": method, "error": str(e)},
            )

    @staticmethod
    def _log_stage(request_id: str, stage: GenerationStage, **extra: Any) -> None:
        logger.debug(
            f"response_generator:stage:{stage.value}",
            extra={"request_id": request_id, "stage": stage.value, **extra},
        )
