# src/labforge/providers/gemini_adapter.py
from __future__ import annotations
import base64
import logging
from typing import Any, List, Optional, Sequence

from google import genai
from google.genai import types

from labforge.core.errors import (
    ProviderClientError, ProviderError, ProviderTransientError, UnauthorizedError,
)
from labforge.core.ports import (
    CancellationToken, ChunkCallback, ContentPart, ImagePart, ProviderConfig, ProviderKind, StatusCallback,
)
from labforge.providers.base import BaseAdapter, TextCollector, close_stream, combine_prompt
from labforge.providers.registry import ProviderRegistry
from labforge.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)


def _classify_gemini_exception(exc: Exception) -> Exception:
    """Map google-genai errors (code/status/message attributes) onto neutral provider errors."""
    code = getattr(exc, "code", None)
    status = getattr(exc, "status", None)
    status = status if isinstance(status, str) else ""
    msg = str(exc)
    if isinstance(code, int) and not isinstance(code, bool):
        if code == 429 or code >= 500:
            return ProviderTransientError(msg, status_code=code, status=status)
        return ProviderClientError(msg, status_code=code, status=status)
    return ProviderTransientError(msg, status=status)


def to_gemini_part(part: ContentPart) -> Any:
    if isinstance(part, ImagePart):
        return types.Part.from_bytes(data=base64.b64decode(part.data), mime_type=part.mime_type)
    return types.Part.from_text(text=part.text)


@ProviderRegistry.register(ProviderKind.GEMINI)
class GeminiAdapter(BaseAdapter):
    """
    Gemini adapter over the google-genai async client.
    Text calls combine prompt and content into one message; the multi-modal call
    sends the prompt as the first part followed by the caller's parts in order.
    """

    provider = ProviderKind.GEMINI

    def __init__(self, model: str, api_key: str, *, retry_policy: Optional[RetryPolicy] = None, retry=None):
        if not api_key:
            raise UnauthorizedError("No API key for 'gemini'")
        super().__init__(model, retry_policy=retry_policy, retry=retry)
        self.client = genai.Client(api_key=api_key)
        logger.debug("GeminiAdapter: model=%s", model)

    @classmethod
    def create(cls, config: ProviderConfig, *, retry_policy: Optional[RetryPolicy] = None) -> "GeminiAdapter":
        return cls(model=config.resolved_model, api_key=config.validate().api_key, retry_policy=retry_policy)

    async def _generate(self, contents: Any) -> str:
        try:
            resp = await self.client.aio.models.generate_content(model=self.model, contents=contents)
        except Exception as e:
            raise _classify_gemini_exception(e) from e
        return resp.text or ""

    async def _stream(self, contents: Any, collector: TextCollector) -> str:
        try:
            stream = await self.client.aio.models.generate_content_stream(model=self.model, contents=contents)
        except Exception as e:
            raise _classify_gemini_exception(e) from e

        try:
            async for chunk in stream:
                collector.add(chunk.text)
        except ProviderError:
            raise
        except Exception as e:
            raise _classify_gemini_exception(e) from e
        finally:
            # Cancel the reader so the connection is released even mid-stream
            await close_stream(stream)
        return collector.text

    async def call_once(
        self,
        prompt: str,
        content: str,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        contents = combine_prompt(prompt, content)
        return await self._run("process text", lambda: self._generate(contents), token, on_status)

    async def call_streaming(
        self,
        prompt: str,
        content: str,
        on_chunk: ChunkCallback,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        contents = combine_prompt(prompt, content)

        async def attempt() -> str:
            return await self._stream(contents, TextCollector(token, on_chunk))

        return await self._run("process text stream", attempt, token, on_status)

    async def call_multimodal_streaming(
        self,
        prompt: str,
        parts: Sequence[ContentPart],
        on_chunk: ChunkCallback,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        contents: List[Any] = [types.Part.from_text(text=prompt), *(to_gemini_part(p) for p in parts)]

        async def attempt() -> str:
            return await self._stream(contents, TextCollector(token, on_chunk))

        return await self._run("process multi-modal stream", attempt, token, on_status)
