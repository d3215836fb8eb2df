from __future__ import annotations
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from labforge.core.normalizer import normalize
from labforge.core.ports import CancellationToken, ChunkCallback, ProviderKind, StatusCallback
from labforge.resilience.retry import RetryController, RetryPolicy

logger = logging.getLogger(__name__)

PROMPT_SEPARATOR = "\n\n---\n\n"


def combine_prompt(prompt: str, content: str) -> str:
    return f"{prompt}{PROMPT_SEPARATOR}{content}"


async def close_stream(stream: Any) -> None:
    """Release a streaming response (SDK stream, async generator, ...)."""
    closer = getattr(stream, "aclose", None) or getattr(stream, "close", None)
    if closer is None:
        return
    try:
        res = closer()
        if inspect.isawaitable(res):
            await res
    except Exception:
        logger.debug("closing stream failed", exc_info=True)


class TextCollector:
    """Accumulates fragments for one attempt and forwards them to on_chunk."""

    def __init__(self, token: CancellationToken, on_chunk: Optional[ChunkCallback] = None):
        self.token = token
        self.on_chunk = on_chunk
        self.parts: list[str] = []

    def add(self, piece: Optional[str]) -> None:
        # A set token means no further chunk reaches the caller
        self.token.raise_if_cancelled()
        if not piece:
            return
        self.parts.append(piece)
        if self.on_chunk is not None:
            self.on_chunk(piece)

    @property
    def text(self) -> str:
        return "".join(self.parts)


class BaseAdapter:
    """
    Shared plumbing for the provider adapters:
    every operation runs under the retry controller and its final text goes
    through the normalizer with this adapter's provider hint.
    """

    provider: ProviderKind
    supports_images = True

    def __init__(self, model: str, *, retry_policy: Optional[RetryPolicy] = None,
                 retry: Optional[RetryController] = None):
        self.model = model
        self.retry = retry or RetryController(self.provider.display_name, retry_policy)

    async def _run(
        self,
        label: str,
        attempt: Callable[[], Awaitable[str]],
        token: CancellationToken,
        on_status: Optional[StatusCallback],
    ) -> str:
        raw = await self.retry.execute(attempt, token, on_status, label=label)
        return normalize(raw, self.provider)
