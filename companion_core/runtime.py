from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from .background import BackgroundWriter
from .config import Settings
from .memory.classifier import KeywordClassifier, TextClassifier
from .persona.registry import PersonaRegistry
from .pipeline.chat import ChatPipeline
from .pipeline.context_builder import ContextBuilder
from .pipeline.orchestrator import ResponseOrchestrator
from .pipeline.quota import QuotaGate
from .pipeline.session_manager import SessionManager
from .pipeline.summary import SummaryRefresher
from .services.llm_client import ChatCompletionClient
from .storage.base import Storage
from .storage.factory import build_storage

logger = logging.getLogger("companion_core")


@dataclass(slots=True)
class Companion:
    """Every long-lived component of the service, built once at startup."""

    settings: Settings
    storage: Storage
    llm: ChatCompletionClient
    writer: BackgroundWriter
    summary_writer: BackgroundWriter
    registry: PersonaRegistry
    classifier: TextClassifier
    sessions: SessionManager
    quota: QuotaGate
    summaries: SummaryRefresher
    pipeline: ChatPipeline

    async def start(self) -> None:
        await self.storage.init()
        await self.llm.start()
        self.writer.start()
        self.summary_writer.start()
        logger.info(
            "[startup] storage=%s llm_configured=%s model=%s personas=%s",
            self.storage.backend_name,
            self.llm.configured,
            self.llm.model,
            len(self.registry.ids()),
        )

    async def close(self) -> None:
        await _run_shutdown_step("pipeline.drain", self.pipeline.drain(), timeout=10.0)
        await _run_shutdown_step("writer.close", self.writer.close(), timeout=10.0)
        await _run_shutdown_step("summary_writer.close", self.summary_writer.close(), timeout=5.0)
        await _run_shutdown_step("llm.close", self.llm.close(), timeout=6.0)
        await _run_shutdown_step("storage.close", self.storage.close(), timeout=6.0)


async def _run_shutdown_step(label: str, coro: object, *, timeout: float) -> None:
    try:
        await asyncio.wait_for(coro, timeout=timeout)  # type: ignore[arg-type]
    except asyncio.TimeoutError:
        logger.warning("Shutdown step timed out: %s", label)
    except Exception as exc:
        logger.warning("Shutdown step failed: %s (%s)", label, exc)


def build_companion(
    settings: Settings,
    *,
    storage: Storage | None = None,
    llm: ChatCompletionClient | None = None,
    registry: PersonaRegistry | None = None,
) -> Companion:
    storage = storage if storage is not None else build_storage(settings)
    llm = llm if llm is not None else ChatCompletionClient(
        api_key=settings.llm_api_key,
        model=settings.llm_model,
        timeout_seconds=settings.llm_timeout_seconds,
        temperature=settings.llm_temperature,
        max_output_tokens=settings.llm_max_tokens,
        base_url=settings.llm_base_url,
    )
    registry = registry if registry is not None else PersonaRegistry.load(
        settings.personas_json_path, default_id=settings.default_persona_id
    )
    classifier = KeywordClassifier.default()
    writer = BackgroundWriter("persistence", maxsize=settings.background_queue_size)
    # Summary refreshes get their own worker, apart from message and counter writes.
    summary_writer = BackgroundWriter("summary", maxsize=settings.background_queue_size)
    sessions = SessionManager(storage, timeout_minutes=settings.session_timeout_minutes)
    quota = QuotaGate(
        storage,
        free_limit=settings.free_message_limit,
        window=settings.quota_window,
        premium_user_ids=settings.premium_user_ids,
    )
    summaries = SummaryRefresher(
        storage,
        llm,
        summary_writer,
        enabled=settings.summary_enabled,
        min_new_user_messages=settings.summary_min_new_user_messages,
        min_interval_seconds=settings.summary_min_interval_seconds,
        window_messages=settings.summary_window_messages,
    )
    context_builder = ContextBuilder(
        storage,
        recent_limit=settings.context_recent_messages,
        history_limit=settings.context_session_history,
        transcript_lines=settings.context_transcript_lines,
        transcript_chars=settings.context_transcript_chars,
    )
    orchestrator = ResponseOrchestrator(
        llm,
        max_attempts=settings.llm_max_attempts,
        retry_delays=settings.llm_retry_delays,
        turn_timeout=settings.turn_timeout_seconds,
        temperature=settings.llm_temperature,
        max_tokens=settings.llm_max_tokens or None,
        word_delay=settings.fallback_word_delay_seconds,
    )
    pipeline = ChatPipeline(
        storage=storage,
        registry=registry,
        classifier=classifier,
        sessions=sessions,
        context_builder=context_builder,
        quota=quota,
        orchestrator=orchestrator,
        writer=writer,
        summaries=summaries,
        chat_history_turns=settings.chat_history_turns,
        post_process_enabled=settings.post_process_enabled,
    )
    return Companion(
        settings=settings,
        storage=storage,
        llm=llm,
        writer=writer,
        summary_writer=summary_writer,
        registry=registry,
        classifier=classifier,
        sessions=sessions,
        quota=quota,
        summaries=summaries,
        pipeline=pipeline,
    )
