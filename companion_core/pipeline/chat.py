from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List

from ..background import BackgroundWriter
from ..common import new_id, utcnow
from ..errors import PersistenceError, ValidationError
from ..memory.adapter import adapt_memory
from ..memory.classifier import TextClassifier
from ..models import TAG_GENERAL, TAG_INTERRUPTED, TAG_SAFETY, Message, QuotaState, Session, UserProfile
from ..persona.models import PersonaProfile
from ..persona.post_processor import post_process
from ..persona.registry import PersonaRegistry
from ..storage.base import Storage
from .composer import compose_prompt
from .context_builder import ContextBuilder, build_conversation_history
from .orchestrator import OrchestrationResult, ResponseOrchestrator
from .quota import QuotaGate
from .safety import check_safety
from .session_manager import SessionManager
from .summary import SummaryRefresher

logger = logging.getLogger("companion_core.chat")

MAX_CONTENT_CHARS = 4000


class TurnStream:
    """Consumer side of one chat turn: an async iterator of event dicts.

    The last event always has ``done=True``. Once detached, further events are discarded
    and the producer keeps running to completion.
    """

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=max(1, int(maxsize)))
        self.detached = False
        self.task: asyncio.Task[None] | None = None

    async def _put(self, event: Dict[str, Any]) -> None:
        if self.detached:
            return
        await self._queue.put(event)

    async def emit_chunk(self, content: str) -> None:
        await self._put({"content": content, "done": False})

    async def finish(self, event: Dict[str, Any]) -> None:
        await self._put(event)

    def abort(self, event: Dict[str, Any]) -> None:
        """Queue a terminal event without waiting, dropping the oldest events when full."""
        if self.detached:
            return
        while self._queue.full():
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(event)

    def detach(self) -> None:
        if self.detached:
            return
        self.detached = True
        # Free any producer blocked on a full queue.
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            while True:
                event = await self._queue.get()
                yield event
                if event.get("done"):
                    return
        finally:
            self.detach()

    async def collect(self) -> List[Dict[str, Any]]:
        return [event async for event in self.events()]


@dataclass(slots=True)
class _TurnProgress:
    received_at: datetime = field(default_factory=utcnow)
    session: Session | None = None
    parts: List[str] = field(default_factory=list)
    persisted: bool = False


class ChatPipeline:
    def __init__(
        self,
        *,
        storage: Storage,
        registry: PersonaRegistry,
        classifier: TextClassifier,
        sessions: SessionManager,
        context_builder: ContextBuilder,
        quota: QuotaGate,
        orchestrator: ResponseOrchestrator,
        writer: BackgroundWriter,
        summaries: SummaryRefresher | None = None,
        chat_history_turns: int = 15,
        post_process_enabled: bool = False,
        stream_queue_size: int = 256,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.classifier = classifier
        self.sessions = sessions
        self.context_builder = context_builder
        self.quota = quota
        self.orchestrator = orchestrator
        self.writer = writer
        self.summaries = summaries
        self.chat_history_turns = max(0, int(chat_history_turns))
        self.post_process_enabled = post_process_enabled
        self.stream_queue_size = stream_queue_size
        self.clock = clock
        self._tasks: set[asyncio.Task[None]] = set()

    async def load_profile(self, user_id: str) -> UserProfile | None:
        try:
            return await self.storage.get_user_profile(user_id)
        except PersistenceError as exc:
            logger.warning("[chat] profile lookup failed user=%s (%s)", user_id, exc)
            return None

    def persona_for(self, profile: UserProfile | None) -> PersonaProfile:
        return self.registry.load_persona(profile.persona_id if profile else None)

    async def select_persona(self, user_id: str, persona_id: str) -> PersonaProfile:
        if not self.registry.exists(persona_id):
            raise ValidationError(f"unknown persona: {persona_id}")
        profile = await self.load_profile(user_id) or UserProfile(user_id=user_id)
        profile.persona_id = persona_id
        await self.storage.upsert_user_profile(profile)
        logger.info("[chat] persona selected user=%s persona=%s", user_id, persona_id)
        return self.registry.load_persona(persona_id)

    async def start_turn(self, user_id: str, content: Any, session_id: str | None = None) -> TurnStream:
        """Validate and quota-check synchronously, then run the turn in a producer task."""
        user_id = str(user_id or "").strip()
        if not user_id:
            raise ValidationError("userId is required")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content is required")
        if len(content) > MAX_CONTENT_CHARS:
            raise ValidationError(f"content must be at most {MAX_CONTENT_CHARS} characters")

        profile = await self.load_profile(user_id)
        quota = await self.quota.enforce(user_id, profile)

        stream = TurnStream(self.stream_queue_size)
        task = asyncio.create_task(
            self._produce(stream, user_id, content, session_id, profile, quota),
            name=f"chat-turn-{user_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        stream.task = task
        return stream

    async def _produce(
        self,
        stream: TurnStream,
        user_id: str,
        content: str,
        requested_session_id: str | None,
        profile: UserProfile | None,
        quota: QuotaState,
    ) -> None:
        terminal: Dict[str, Any] = {
            "content": "",
            "done": True,
            "sessionId": requested_session_id,
            "messageCount": quota.message_count,
            "messageLimit": quota.limit,
            "isFallback": False,
        }
        progress = _TurnProgress()
        try:
            await self._run_turn(stream, terminal, progress, user_id, content, requested_session_id, profile, quota)
        except asyncio.CancelledError:
            if progress.session is not None and not progress.persisted:
                reply = "".join(progress.parts)
                self._persist_turn(
                    progress.session, user_id, content, progress.received_at, reply, TAG_INTERRUPTED
                )
                terminal["messageCount"] = quota.message_count + 1
            logger.warning("[chat] turn cancelled user=%s streamed_chars=%s", user_id, sum(map(len, progress.parts)))
            terminal["error"] = "cancelled"
            stream.abort(terminal)
            raise
        except Exception as exc:
            logger.exception("[chat] turn failed user=%s", user_id)
            terminal["error"] = str(exc) or exc.__class__.__name__
        await stream.finish(terminal)

    async def _run_turn(
        self,
        stream: TurnStream,
        terminal: Dict[str, Any],
        progress: _TurnProgress,
        user_id: str,
        content: str,
        requested_session_id: str | None,
        profile: UserProfile | None,
        quota: QuotaState,
    ) -> None:
        received_at = progress.received_at = self.clock()
        session = await self.sessions.get_or_create_session(user_id, "chat")
        progress.session = session
        terminal["sessionId"] = session.id
        if requested_session_id and requested_session_id != session.id:
            logger.debug(
                "[chat] client session %s superseded by %s user=%s", requested_session_id, session.id, user_id
            )

        persona = self.persona_for(profile)
        context = await self.context_builder.build_chat_context(user_id, session.id)

        verdict = check_safety(content, persona, self.classifier)
        if not verdict.safe:
            reply = verdict.override_response or ""
            await stream.emit_chunk(reply)
            self._persist_turn(session, user_id, content, received_at, reply, TAG_SAFETY)
            progress.persisted = True
            self.writer.submit(
                f"safety-audit user={user_id}",
                lambda: self.storage.record_safety_event(user_id, session.id, verdict.reason.value),
            )
            terminal["messageCount"] = quota.message_count + 1
            terminal["safetyReason"] = verdict.reason.value
            return

        memory = adapt_memory(context.recent_messages, persona, self.classifier)
        history = build_conversation_history(context.recent_messages, self.chat_history_turns)
        messages = compose_prompt(
            persona,
            memory,
            content,
            context_fragment=context.system_prompt,
            history=history,
        )
        async def emit(chunk: str) -> None:
            progress.parts.append(chunk)
            await stream.emit_chunk(chunk)

        result = await self.orchestrator.run(messages, emit)
        reply = self._final_text(result, persona)
        self._persist_turn(session, user_id, content, received_at, reply, result.tag)
        progress.persisted = True
        terminal["messageCount"] = quota.message_count + 1
        terminal["isFallback"] = result.is_fallback
        logger.info(
            "[chat] turn done user=%s session=%s persona=%s tag=%s attempts=%s",
            user_id,
            session.id,
            persona.id,
            result.tag,
            result.attempts,
        )

    def _final_text(self, result: OrchestrationResult, persona: PersonaProfile) -> str:
        if self.post_process_enabled and result.tag == TAG_GENERAL:
            return post_process(result.text, persona)
        return result.text

    def _persist_turn(
        self,
        session: Session,
        user_id: str,
        content: str,
        received_at: datetime,
        reply: str,
        tag: str,
    ) -> None:
        user_message = Message(
            id=new_id(),
            session_id=session.id,
            user_id=user_id,
            role="user",
            text=content,
            tag=TAG_GENERAL,
            created_at=received_at,
        )
        assistant_message = Message(
            id=new_id(),
            session_id=session.id,
            user_id=user_id,
            role="assistant",
            text=reply,
            tag=tag,
            created_at=max(self.clock(), received_at + timedelta(microseconds=1)),
        )
        self.writer.submit(f"save-user-message session={session.id}", lambda: self.storage.save_message(user_message))
        if reply:
            self.writer.submit(
                f"save-assistant-message session={session.id}",
                lambda: self.storage.save_message(assistant_message),
            )
        self.writer.submit(f"usage-counter user={user_id}", lambda: self.storage.increment_message_count(user_id))
        if self.summaries is not None:
            self.summaries.schedule(user_id)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait for in-flight turns (used at shutdown)."""
        if not self._tasks:
            return
        done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("[chat] cancelled %s unfinished turn(s) at shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
