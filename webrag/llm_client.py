"""OpenAI-compatible chat client used for every model call in the pipeline."""
from __future__ import annotations

import asyncio
import time
from typing import Any, Callable
from urllib.parse import urlsplit

from loguru import logger

from webrag.config import settings
from webrag.models.errors import ConfigurationError
from webrag.services import logger as log_service

THINK_START_TAGS = ("<|begin_of_thought|>", "<think>", "```thinking", "```thoughts")
THINK_END_TAGS = ("<|end_of_thought|>", "</think>", "```")


class ThinkFilter:
    """Drops reasoning spans from a stream of text deltas.

    Tags may arrive split across deltas, so text that could be the start of a
    tag is held back until the next delta decides it.
    """

    def __init__(self) -> None:
        self.in_think = False
        self._pending = ""

    @staticmethod
    def _earliest(text: str, tags: tuple[str, ...]) -> tuple[int, str] | None:
        best: tuple[int, str] | None = None
        for tag in tags:
            index = text.find(tag)
            if index >= 0 and (best is None or index < best[0]):
                best = (index, tag)
        return best

    @staticmethod
    def _partial_tag_suffix(text: str, tags: tuple[str, ...]) -> int:
        longest = 0
        for tag in tags:
            for size in range(min(len(tag) - 1, len(text)), 0, -1):
                if text.endswith(tag[:size]):
                    longest = max(longest, size)
                    break
        return longest

    def feed(self, delta: str) -> str:
        self._pending += delta
        visible: list[str] = []
        while True:
            if self.in_think:
                found = self._earliest(self._pending, THINK_END_TAGS)
                if found is None:
                    if len(self._pending) > 2048:
                        self._pending = self._pending[-512:]
                    return "".join(visible)
                index, tag = found
                self._pending = self._pending[index + len(tag):]
                self.in_think = False
                continue

            found = self._earliest(self._pending, THINK_START_TAGS)
            if found is not None:
                index, tag = found
                visible.append(self._pending[:index])
                self._pending = self._pending[index + len(tag):]
                self.in_think = True
                continue

            hold = self._partial_tag_suffix(self._pending, THINK_START_TAGS)
            if hold:
                visible.append(self._pending[:-hold])
                self._pending = self._pending[-hold:]
            else:
                visible.append(self._pending)
                self._pending = ""
            return "".join(visible)

    def flush(self) -> str:
        if self.in_think:
            return ""
        tail, self._pending = self._pending, ""
        return tail


class StreamHandle:
    """Cancellable handle for one streaming completion."""

    def __init__(self, task: asyncio.Task):
        self.task = task

    def cancel(self) -> None:
        self.task.cancel()

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> None:
        try:
            await self.task
        except asyncio.CancelledError:
            pass


def _validated_base_url(base: str) -> str:
    base = base.strip()
    parsed = urlsplit(base)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigurationError(f"Invalid chat API base URL: {base!r}")
    return base


class ChatClient:
    def __init__(self, openai_client: Any, model: str):
        self._client = openai_client
        self.model = model

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        caller: str,
        max_tokens: int = 1024,
        temperature: float = 0,
    ) -> str:
        """One non-streaming call; returns the reply text."""
        t0 = time.monotonic()
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                stream=False,
            )
        except Exception as exc:
            log_service.log_llm_call(
                model=self.model,
                caller=caller,
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            raise
        log_service.log_llm_call(
            model=self.model,
            caller=caller,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        return (getattr(message, "content", None) or "").strip()

    async def _stream(
        self,
        messages: list[dict[str, str]],
        on_chunk: Callable[[str], None],
        on_complete: Callable[[], None],
        on_error: Callable[[BaseException], None],
    ) -> None:
        think_filter = ThinkFilter()
        t0 = time.monotonic()
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
            )
            async for chunk in stream:
                choices = getattr(chunk, "choices", None) or []
                if not choices:
                    continue
                delta = getattr(choices[0], "delta", None)
                text = getattr(delta, "content", None) if delta else None
                if not text:
                    continue
                visible = think_filter.feed(text)
                if visible:
                    on_chunk(visible)
            tail = think_filter.flush()
            if tail:
                on_chunk(tail)
        except asyncio.CancelledError:
            logger.info("Completion stream cancelled")
            raise
        except Exception as exc:
            log_service.log_llm_call(
                model=self.model,
                caller="answer_stream",
                duration_ms=int((time.monotonic() - t0) * 1000),
                status="error",
                error=str(exc),
            )
            on_error(exc)
            return
        log_service.log_llm_call(
            model=self.model,
            caller="answer_stream",
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        on_complete()

    def stream_chat(
        self,
        messages: list[dict[str, str]],
        on_chunk: Callable[[str], None],
        on_complete: Callable[[], None],
        on_error: Callable[[BaseException], None],
    ) -> StreamHandle:
        """Start streaming a completion; exactly one of on_complete/on_error fires."""
        task = asyncio.create_task(self._stream(messages, on_chunk, on_complete, on_error))
        return StreamHandle(task)


def get_model() -> str:
    model = settings.chat_model.strip()
    if not model:
        raise ConfigurationError("CHAT_MODEL is not configured")
    return model


def get_client(model: str | None = None) -> ChatClient:
    """Build a chat client for the configured OpenAI-compatible endpoint."""
    from openai import AsyncOpenAI

    base_url = _validated_base_url(settings.chat_api_base)
    openai_client = AsyncOpenAI(
        api_key=settings.chat_api_key.strip() or "not-needed",
        base_url=base_url,
    )
    return ChatClient(openai_client, model or get_model())


_client: ChatClient | None = None


def client() -> ChatClient:
    """Get or create the shared chat client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
