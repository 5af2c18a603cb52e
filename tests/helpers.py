from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from companion_core.background import BackgroundWriter  # noqa: E402
from companion_core.common import new_id  # noqa: E402
from companion_core.errors import TransientUpstreamError  # noqa: E402
from companion_core.memory.classifier import KeywordClassifier  # noqa: E402
from companion_core.models import Message  # noqa: E402
from companion_core.persona.registry import PersonaRegistry  # noqa: E402
from companion_core.pipeline.chat import ChatPipeline  # noqa: E402
from companion_core.pipeline.context_builder import ContextBuilder  # noqa: E402
from companion_core.pipeline.orchestrator import ResponseOrchestrator  # noqa: E402
from companion_core.pipeline.quota import QuotaGate  # noqa: E402
from companion_core.pipeline.session_manager import SessionManager  # noqa: E402
from companion_core.pipeline.summary import SummaryRefresher  # noqa: E402

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeLLM:
    """Scripted streaming provider.

    Each script entry drives one ``stream_chat`` call: a list of tokens streams them,
    an exception is raised before any token, and a ``(tokens, exception)`` pair streams
    the tokens then raises.
    """

    def __init__(self, script: List[Any] | None = None, *, configured: bool = True) -> None:
        self.script = list(script or [])
        self._configured = configured
        self.calls: List[List[Dict[str, str]]] = []
        self.json_calls: List[List[Dict[str, str]]] = []
        self.json_reply: Dict[str, Any] | None = None
        self.model = "fake-model"

    @property
    def configured(self) -> bool:
        return self._configured

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        self.calls.append(messages)
        step = self.script.pop(0) if self.script else ["ok"]
        if isinstance(step, BaseException):
            raise step
        tokens, error = step if isinstance(step, tuple) else (step, None)
        for token in tokens:
            yield token
        if error is not None:
            raise error

    async def json_chat(
        self,
        messages: List[Dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> Dict[str, Any] | None:
        self.json_calls.append(messages)
        return self.json_reply


def upstream_500() -> TransientUpstreamError:
    return TransientUpstreamError("LLM error 500: boom", status=500)


class FakeSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_message(
    text: str,
    *,
    role: str = "user",
    user_id: str = "u1",
    session_id: str = "s1",
    minutes: int = 0,
    tag: str = "general",
) -> Message:
    return Message(
        id=new_id(),
        session_id=session_id,
        user_id=user_id,
        role=role,
        text=text,
        tag=tag,
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


def build_pipeline(
    storage: Any,
    llm: FakeLLM,
    *,
    free_limit: int = 20,
    sleep: FakeSleep | None = None,
    summaries_enabled: bool = False,
    post_process_enabled: bool = False,
    chat_history_turns: int = 0,
) -> ChatPipeline:
    writer = BackgroundWriter("test")
    summaries = SummaryRefresher(
        storage, llm, BackgroundWriter("test-summary"), enabled=summaries_enabled, min_new_user_messages=1
    )
    return ChatPipeline(
        storage=storage,
        registry=PersonaRegistry.builtin(),
        classifier=KeywordClassifier.default(),
        sessions=SessionManager(storage),
        context_builder=ContextBuilder(storage),
        quota=QuotaGate(storage, free_limit=free_limit),
        orchestrator=ResponseOrchestrator(llm, sleep=sleep or FakeSleep(), word_delay=0.05),
        writer=writer,
        summaries=summaries,
        chat_history_turns=chat_history_turns,
        post_process_enabled=post_process_enabled,
    )
