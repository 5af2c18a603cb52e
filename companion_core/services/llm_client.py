from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from typing import Any, AsyncIterator, Dict, List

import aiohttp

from ..errors import TransientUpstreamError

logger = logging.getLogger("companion_core.llm")

_RETRIABLE_STATUSES = {408, 409, 429, 500, 502, 503, 504}


class ChatCompletionClient:
    """OpenAI-compatible chat completions client (Groq by default)."""

    backend_name = "openai_compatible"

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "https://api.groq.com/openai/v1",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        # No total cap: a healthy stream may outlive the read timeout as long as chunks keep coming.
        self.timeout = aiohttp.ClientTimeout(total=None, sock_connect=timeout_seconds, sock_read=timeout_seconds)
        self.temperature = temperature
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self._session: aiohttp.ClientSession | None = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    @staticmethod
    def _sanitize_messages(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
        mapped: List[Dict[str, str]] = []
        for msg in messages:
            role = str(msg.get("role", "")).strip().lower() or "user"
            if role not in {"system", "user", "assistant"}:
                role = "user"
            content = str(msg.get("content", ""))
            if not content.strip():
                continue
            mapped.append({"role": role, "content": content})
        return mapped

    def _payload(
        self,
        messages: List[Dict[str, str]],
        *,
        stream: bool,
        temperature: float | None,
        max_output_tokens: int | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self._sanitize_messages(messages),
            "temperature": self.temperature if temperature is None else temperature,
            "stream": stream,
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens is not None and int(selected_tokens) > 0:
            payload["max_tokens"] = int(selected_tokens)
        return payload

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None
        return self._session

    @staticmethod
    def parse_stream_line(raw_line: str) -> str | None:
        """Return the token carried by one SSE line, ``""`` for no token, ``None`` at ``[DONE]``."""
        line = raw_line.strip()
        if not line.startswith("data:"):
            return ""
        data = line[len("data:") :].strip()
        if data == "[DONE]":
            return None
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            return ""
        choices = parsed.get("choices") if isinstance(parsed, dict) else None
        if not choices or not isinstance(choices[0], dict):
            return ""
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""

    async def stream_chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> AsyncIterator[str]:
        """Yield token chunks as the provider sends them.

        Connection failures and non-2xx replies raise ``TransientUpstreamError``.
        """
        session = await self._ensure_session()
        payload = self._payload(
            messages,
            stream=True,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )
        try:
            async with session.post(self._endpoint(), json=payload, headers=self._headers()) as response:
                if response.status != 200:
                    text = await response.text()
                    raise TransientUpstreamError(
                        f"LLM error {response.status}: {text[:300]}",
                        status=response.status,
                    )
                async for raw in response.content:
                    token = self.parse_stream_line(raw.decode("utf-8", errors="replace"))
                    if token is None:
                        return
                    if token:
                        yield token
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientUpstreamError(f"LLM connection failed: {exc}") from exc

    async def _request(self, payload: Dict[str, Any], retries: int = 3) -> Dict[str, Any]:
        session = await self._ensure_session()
        url = self._endpoint()
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with session.post(url, json=payload, headers=self._headers()) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)

                    error = TransientUpstreamError(
                        f"LLM error {response.status}: {text[:300]}",
                        status=response.status,
                    )
                    if response.status not in _RETRIABLE_STATUSES:
                        raise error
                    last_error = error
            except asyncio.CancelledError:
                raise
            except TransientUpstreamError as exc:
                if exc.status is not None and exc.status not in _RETRIABLE_STATUSES:
                    raise
                last_error = exc
            except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
                last_error = exc

            if attempt < retries:
                logger.debug("[llm] request attempt=%s failed: %s", attempt, last_error)
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        raise TransientUpstreamError(f"LLM request failed after retries: {last_error}")

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        choices = data.get("choices") or []
        if not choices:
            raise TransientUpstreamError("LLM returned no choices")
        message = choices[0].get("message") or {}
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            raise TransientUpstreamError(
                f"LLM empty response (finish_reason={choices[0].get('finish_reason')})"
            )
        return content.strip()

    async def chat(
        self,
        messages: List[Dict[str, str]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        payload = self._payload(
            messages,
            stream=False,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )
        data = await self._request(payload)
        return self._extract_text(data)

    @staticmethod
    def _strip_json_fences(text: str) -> str:
        cleaned = text.strip()
        if cleaned.startswith("```"):
            cleaned = re.sub(r"^```(?:json)?", "", cleaned, flags=re.IGNORECASE).strip()
            cleaned = re.sub(r"```$", "", cleaned).strip()
        return cleaned

    async def json_chat(
        self,
        messages: List[Dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> Dict[str, Any] | None:
        strict_messages = list(messages)
        strict_messages.append(
            {
                "role": "system",
                "content": (
                    "Return only valid JSON object with no markdown and no additional commentary. "
                    f"Schema hint: {schema_hint}"
                ),
            }
        )
        raw = await self.chat(
            strict_messages,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )
        cleaned = self._strip_json_fences(raw)
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed
