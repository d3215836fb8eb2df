# src/labforge/providers/openai_adapter.py
from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from labforge.core.errors import ProviderClientError, ProviderError, ProviderTransientError, UnauthorizedError
from labforge.core.ports import (
    CancellationToken, ChunkCallback, ContentPart, ImagePart, ProviderConfig, ProviderKind, StatusCallback,
)
from labforge.providers.base import BaseAdapter, TextCollector, close_stream
from labforge.providers.registry import ProviderRegistry
from labforge.resilience.retry import RetryPolicy


def _classify_openai_exception(exc: Exception) -> Exception:
    """
    Convert OpenAI/client exceptions into neutral provider errors.
    Avoid hard dependency on specific SDK exception classes by inspecting attributes.
    """
    status = getattr(exc, "status_code", None) or getattr(exc, "http_status", None)
    msg = str(exc)

    if status is not None:
        s = int(status)
        if s == 429 or s >= 500:
            return ProviderTransientError(msg, status_code=s)
        return ProviderClientError(msg, status_code=s)
    return ProviderTransientError(msg)


def to_openai_content(parts: Sequence[ContentPart]) -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for part in parts:
        if isinstance(part, ImagePart):
            out.append({"type": "image_url", "image_url": {"url": part.as_data_uri()}})
        else:
            out.append({"type": "text", "text": part.text})
    return out


@ProviderRegistry.register(ProviderKind.OPENAI)
class OpenAIAdapter(BaseAdapter):
    """
    Chat-completions adapter:
    - text calls send the prompt as a system message and the content as a user message
    - multi-modal calls send a single user message with typed parts (prompt first)
    - SDK errors are mapped to neutral provider errors; retry is ours, not the SDK's
    """

    provider = ProviderKind.OPENAI

    def __init__(
        self,
        model: str,
        api_key: str,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
        base_url: Optional[str] = None,
        retry=None,
    ):
        if not api_key:
            raise UnauthorizedError("No API key for 'openai'")
        super().__init__(model, retry_policy=retry_policy, retry=retry)
        client_kwargs: Dict[str, Any] = {"api_key": api_key, "max_retries": 0}
        if base_url:
            client_kwargs["base_url"] = base_url
        if timeout is not None:
            client_kwargs["timeout"] = timeout
        self.client = AsyncOpenAI(**client_kwargs)

    @classmethod
    def create(cls, config: ProviderConfig, *, retry_policy: Optional[RetryPolicy] = None) -> "OpenAIAdapter":
        return cls(model=config.resolved_model, api_key=config.validate().api_key, retry_policy=retry_policy)

    def _text_messages(self, prompt: str, content: str) -> List[Dict[str, Any]]:
        return [
            {"role": "system", "content": prompt},
            {"role": "user", "content": content},
        ]

    async def _complete(self, messages: List[Dict[str, Any]]) -> str:
        try:
            resp = await self.client.chat.completions.create(model=self.model, messages=messages, stream=False)
        except Exception as e:
            raise _classify_openai_exception(e) from e
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""

    async def _stream(self, messages: List[Dict[str, Any]], collector: TextCollector) -> str:
        try:
            stream = await self.client.chat.completions.create(model=self.model, messages=messages, stream=True)
        except Exception as e:
            raise _classify_openai_exception(e) from e

        try:
            async for chunk in stream:
                piece = None
                try:
                    piece = chunk.choices[0].delta.content
                except (AttributeError, IndexError):
                    piece = None
                collector.add(piece)
        except ProviderError:
            raise
        except Exception as e:
            raise _classify_openai_exception(e) from e
        finally:
            await close_stream(stream)
        return collector.text

    async def call_once(
        self,
        prompt: str,
        content: str,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        messages = self._text_messages(prompt, content)
        return await self._run("process text", lambda: self._complete(messages), token, on_status)

    async def call_streaming(
        self,
        prompt: str,
        content: str,
        on_chunk: ChunkCallback,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        messages = self._text_messages(prompt, content)

        async def attempt() -> str:
            return await self._stream(messages, TextCollector(token, on_chunk))

        return await self._run("process text stream", attempt, token, on_status)

    async def call_multimodal_streaming(
        self,
        prompt: str,
        parts: Sequence[ContentPart],
        on_chunk: ChunkCallback,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        messages = [{"role": "user", "content": [{"type": "text", "text": prompt}, *to_openai_content(parts)]}]

        async def attempt() -> str:
            return await self._stream(messages, TextCollector(token, on_chunk))

        return await self._run("process multi-modal stream", attempt, token, on_status)
