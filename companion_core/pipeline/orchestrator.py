from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Protocol, Sequence

from ..errors import TransientUpstreamError
from ..models import TAG_FALLBACK, TAG_GENERAL, TAG_INTERRUPTED
from ..prompts.chat import pick_fallback_line

logger = logging.getLogger("companion_core.orchestrator")

Emit = Callable[[str], Awaitable[None]]


class StreamingLLM(Protocol):
    @property
    def configured(self) -> bool: ...

    def stream_chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[str]: ...


@dataclass(slots=True)
class OrchestrationResult:
    text: str
    tag: str
    attempts: int
    is_fallback: bool
    error: str | None = None


class _PartialStreamError(Exception):
    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause


class ResponseOrchestrator:
    """Streams one completion to the caller, retrying before the first token.

    A failure after output has been forwarded cannot be retried without duplicating text,
    so the partial reply is kept and tagged ``interrupted``. When attempts run out the
    caller receives a scripted fallback line word by word.
    """

    def __init__(
        self,
        llm: StreamingLLM,
        *,
        max_attempts: int = 3,
        retry_delays: Sequence[float] = (1.0, 2.0, 3.0),
        turn_timeout: float = 90.0,
        temperature: float | None = None,
        max_tokens: int | None = None,
        word_delay: float = 0.05,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.llm = llm
        self.max_attempts = max(1, int(max_attempts))
        self.retry_delays = tuple(float(delay) for delay in retry_delays) or (0.0,)
        self.turn_timeout = float(turn_timeout)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.word_delay = max(0.0, float(word_delay))
        self.sleep = sleep
        self.rng = rng
        self.clock = clock

    def _delay(self, attempt: int) -> float:
        index = min(attempt - 1, len(self.retry_delays) - 1)
        return self.retry_delays[index]

    async def _stream_once(
        self,
        messages: List[Dict[str, str]],
        emit: Emit,
        parts: List[str],
        deadline: float,
    ) -> None:
        stream = self.llm.stream_chat(messages, temperature=self.temperature, max_output_tokens=self.max_tokens)
        iterator = stream.__aiter__()
        # Blank chunks are held until the first visible chunk.
        held: List[str] = []
        try:
            while True:
                remaining = deadline - self.clock()
                if remaining <= 0:
                    raise asyncio.TimeoutError("turn deadline reached")
                try:
                    token = await asyncio.wait_for(iterator.__anext__(), timeout=remaining)
                except StopAsyncIteration:
                    return
                if not token:
                    continue
                if not parts and not token.strip():
                    held.append(token)
                    continue
                for chunk in (*held, token):
                    parts.append(chunk)
                    await emit(chunk)
                held.clear()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if parts:
                raise _PartialStreamError(exc) from exc
            raise
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as exc:
                    logger.debug("[llm] stream close failed: %s", exc)

    async def run(self, messages: List[Dict[str, str]], emit: Emit) -> OrchestrationResult:
        if not self.llm.configured:
            logger.warning("[llm] provider not configured; streaming fallback line")
            return await self._fallback(emit, attempts=0, error="llm not configured")

        deadline = self.clock() + self.turn_timeout
        last_error: BaseException | None = None
        attempts = 0

        for attempt in range(1, self.max_attempts + 1):
            attempts = attempt
            parts: List[str] = []
            try:
                await self._stream_once(messages, emit, parts, deadline)
            except asyncio.CancelledError:
                raise
            except _PartialStreamError as exc:
                logger.warning(
                    "[llm] attempt=%s broke after %s chunk(s): %s", attempt, len(parts), exc.cause
                )
                return OrchestrationResult(
                    text="".join(parts),
                    tag=TAG_INTERRUPTED,
                    attempts=attempt,
                    is_fallback=False,
                    error=str(exc.cause),
                )
            except (TransientUpstreamError, asyncio.TimeoutError) as exc:
                last_error = exc
                logger.warning("[llm] attempt=%s failed: %s", attempt, str(exc) or "timeout")
            except Exception as exc:
                last_error = exc
                logger.exception("[llm] attempt=%s failed unexpectedly", attempt)
                break
            else:
                text = "".join(parts)
                if text.strip():
                    logger.debug("[llm] attempt=%s streamed chars=%s", attempt, len(text))
                    return OrchestrationResult(text=text, tag=TAG_GENERAL, attempts=attempt, is_fallback=False)
                last_error = TransientUpstreamError("LLM returned an empty stream")
                logger.warning("[llm] attempt=%s returned no content", attempt)

            remaining = deadline - self.clock()
            if remaining <= 0:
                logger.warning("[llm] turn deadline reached after attempt=%s", attempt)
                break
            await self.sleep(min(self._delay(attempt), remaining))

        error = (str(last_error) or "timeout") if last_error is not None else None
        return await self._fallback(emit, attempts=attempts, error=error)

    async def _fallback(self, emit: Emit, *, attempts: int, error: str | None) -> OrchestrationResult:
        line = " ".join(pick_fallback_line(self.rng).split())
        for index, word in enumerate(line.split()):
            await emit(word if index == 0 else f" {word}")
            if self.word_delay:
                await self.sleep(self.word_delay)
        return OrchestrationResult(text=line, tag=TAG_FALLBACK, attempts=attempts, is_fallback=True, error=error)
