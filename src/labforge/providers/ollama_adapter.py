# src/labforge/providers/ollama_adapter.py
from __future__ import annotations
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from labforge.core.errors import DaemonUnreachableError, ProviderClientError, ProviderTransientError
from labforge.core.ports import (
    DEFAULT_OLLAMA_URL, CancellationToken, ChunkCallback, ContentPart, ImagePart, ProviderConfig, ProviderKind,
    StatusCallback, TextPart,
)
from labforge.providers.base import BaseAdapter, TextCollector, combine_prompt
from labforge.providers.registry import ProviderRegistry
from labforge.resilience.retry import RetryPolicy

logger = logging.getLogger(__name__)

CHAT_ENDPOINT = "/api/chat"


def _status_error(status: int, body: str) -> Exception:
    msg = f"Ollama API error: {status} - {body}"
    if status == 429 or status >= 500:
        return ProviderTransientError(msg, status_code=status)
    return ProviderClientError(msg, status_code=status)


def parse_chat_line(line: str) -> Optional[Dict[str, Any]]:
    """Decode one JSON-lines record; malformed lines yield None."""
    line = line.strip()
    if not line:
        return None
    try:
        obj = json.loads(line)
    except ValueError:
        logger.debug("skipping malformed line from ollama: %r", line[:100])
        return None
    return obj if isinstance(obj, dict) else None


def _message_text(obj: Dict[str, Any]) -> str:
    message = obj.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return ""


@ProviderRegistry.register(ProviderKind.OLLAMA)
class OllamaAdapter(BaseAdapter):
    """
    Local Ollama daemon over HTTP.
    Non-streaming calls read one JSON object; streaming calls read JSON lines.
    Images travel as the message's base64 'images' array.
    """

    provider = ProviderKind.OLLAMA

    def __init__(
        self,
        model: str,
        base_url: str = DEFAULT_OLLAMA_URL,
        *,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policy: Optional[RetryPolicy] = None,
        retry=None,
    ):
        super().__init__(model, retry_policy=retry_policy, retry=retry)
        self.base_url = (base_url or DEFAULT_OLLAMA_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def create(cls, config: ProviderConfig, *, retry_policy: Optional[RetryPolicy] = None) -> "OllamaAdapter":
        return cls(model=config.resolved_model, base_url=config.ollama_base_url, retry_policy=retry_policy)

    def _client(self) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {"base_url": self.base_url, "timeout": self.timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    def _payload(self, messages: List[Dict[str, Any]], *, stream: bool) -> Dict[str, Any]:
        return {"model": self.model, "messages": messages, "stream": stream}

    async def _chat(self, messages: List[Dict[str, Any]]) -> str:
        try:
            async with self._client() as client:
                resp = await client.post(CHAT_ENDPOINT, json=self._payload(messages, stream=False))
                if resp.status_code >= 400:
                    raise _status_error(resp.status_code, resp.text)
                data = resp.json()
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise DaemonUnreachableError(self.base_url) from e
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"Ollama request failed: {e}") from e
        except ValueError as e:
            raise ProviderTransientError(f"Ollama returned invalid JSON: {e}") from e
        if isinstance(data, dict) and data.get("error"):
            raise ProviderTransientError(f"Ollama API error: {data['error']}")
        return _message_text(data) if isinstance(data, dict) else ""

    async def _chat_stream(self, messages: List[Dict[str, Any]], collector: TextCollector) -> str:
        try:
            async with self._client() as client:
                # Leaving the stream context closes the response, which cancels the reader
                async with client.stream("POST", CHAT_ENDPOINT, json=self._payload(messages, stream=True)) as resp:
                    if resp.status_code >= 400:
                        body = (await resp.aread()).decode("utf-8", errors="replace")
                        raise _status_error(resp.status_code, body)
                    async for line in resp.aiter_lines():
                        collector.token.raise_if_cancelled()
                        obj = parse_chat_line(line)
                        if obj is None:
                            continue
                        if obj.get("error"):
                            raise ProviderTransientError(f"Ollama API error: {obj['error']}")
                        collector.add(_message_text(obj))
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise DaemonUnreachableError(self.base_url) from e
        except httpx.HTTPError as e:
            raise ProviderTransientError(f"Ollama stream failed: {e}") from e
        return collector.text

    async def call_once(
        self,
        prompt: str,
        content: str,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        messages = [{"role": "user", "content": combine_prompt(prompt, content)}]
        return await self._run("process text", lambda: self._chat(messages), token, on_status)

    async def call_streaming(
        self,
        prompt: str,
        content: str,
        on_chunk: ChunkCallback,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        messages = [{"role": "user", "content": combine_prompt(prompt, content)}]

        async def attempt() -> str:
            return await self._chat_stream(messages, TextCollector(token, on_chunk))

        return await self._run("process text stream", attempt, token, on_status)

    async def call_multimodal_streaming(
        self,
        prompt: str,
        parts: Sequence[ContentPart],
        on_chunk: ChunkCallback,
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
    ) -> str:
        texts = [p.text for p in parts if isinstance(p, TextPart)]
        images = [p.data for p in parts if isinstance(p, ImagePart)]
        message: Dict[str, Any] = {"role": "user", "content": f"{prompt}\n\n" + "\n".join(texts)}
        if images:
            message["images"] = images

        async def attempt() -> str:
            return await self._chat_stream([message], TextCollector(token, on_chunk))

        return await self._run("process multi-modal stream", attempt, token, on_status)
