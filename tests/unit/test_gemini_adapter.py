# tests/unit/test_gemini_adapter.py

from __future__ import annotations
import sys
import asyncio
from pathlib import Path
from types import SimpleNamespace
import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

import labforge.providers.gemini_adapter as ga  # type: ignore
from labforge.core.errors import ProviderFailedError, UnauthorizedError, UserCancelledError
from labforge.core.ports import CancellationToken, ImagePart, TextPart
from labforge.resilience.retry import RetryController, RetryPolicy


class _ApiError(Exception):
    def __init__(self, msg, code, status):
        super().__init__(msg)
        self.code = code
        self.status = status


class _FakeStream:
    """Async iterator over scripted items; an Exception item is raised when reached."""

    def __init__(self, items):
        self._items = list(items)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._items:
            raise StopAsyncIteration
        item = self._items.pop(0)
        if isinstance(item, Exception):
            raise item
        return SimpleNamespace(text=item)

    async def aclose(self):
        self.closed = True


class _FakeModels:
    def __init__(self):
        self.calls = []
        self.errors = []
        self.text = "hello"
        self.pieces = ["A", "B", "C"]
        self.scripts = []  # one item list per stream call, then self.pieces
        self.streams = []

    async def generate_content(self, *, model, contents):
        self.calls.append({"model": model, "contents": contents})
        if self.errors:
            raise self.errors.pop(0)
        return SimpleNamespace(text=self.text)

    async def generate_content_stream(self, *, model, contents):
        self.calls.append({"model": model, "contents": contents, "stream": True})
        if self.errors:
            raise self.errors.pop(0)
        stream = _FakeStream(self.scripts.pop(0) if self.scripts else self.pieces)
        self.streams.append(stream)
        return stream


class _FakeClient:
    def __init__(self, *, api_key):
        self.api_key = api_key
        self.aio = SimpleNamespace(models=_FakeModels())


async def _no_sleep(_delay, _token):
    return None


def make_adapter(monkeypatch, policy=None):
    monkeypatch.setattr(ga.genai, "Client", _FakeClient, raising=True)
    retry = RetryController("Gemini", policy, sleep=_no_sleep)
    return ga.GeminiAdapter(model="gemini-test", api_key="g-key", retry=retry)


def test_call_once_combines_prompt_and_content(monkeypatch):
    adapter = make_adapter(monkeypatch)
    out = asyncio.run(adapter.call_once("PROMPT", "CONTENT", CancellationToken()))
    assert out == "hello"
    call = adapter.client.aio.models.calls[0]
    assert call["model"] == "gemini-test"
    assert call["contents"] == "PROMPT\n\n---\n\nCONTENT"
    assert adapter.client.api_key == "g-key"


def test_output_gets_gemini_normalization(monkeypatch):
    adapter = make_adapter(monkeypatch)
    adapter.client.aio.models.text = ">[overview]: first\n> second"
    out = asyncio.run(adapter.call_once("P", "C", CancellationToken()))
    assert out == ">[overview]: first second"


def test_streaming(monkeypatch):
    adapter = make_adapter(monkeypatch)
    chunks = []
    out = asyncio.run(adapter.call_streaming("P", "C", chunks.append, CancellationToken()))
    assert chunks == ["A", "B", "C"]
    assert out == "ABC"


def test_multimodal_parts(monkeypatch):
    adapter = make_adapter(monkeypatch)
    parts = [TextPart("lab instructions"), ImagePart.from_bytes(b"\x89PNG", "image/png")]
    asyncio.run(adapter.call_multimodal_streaming("P", parts, lambda _c: None, CancellationToken()))
    contents = adapter.client.aio.models.calls[0]["contents"]
    assert len(contents) == 3
    assert contents[0].text == "P"
    assert contents[1].text == "lab instructions"
    assert contents[2].inline_data.mime_type == "image/png"
    assert contents[2].inline_data.data == b"\x89PNG"


def test_overloaded_gives_up_with_message(monkeypatch):
    adapter = make_adapter(monkeypatch, RetryPolicy(max_retries=2))
    models = adapter.client.aio.models
    models.errors = [_ApiError("model overloaded", 503, "UNAVAILABLE") for _ in range(3)]
    with pytest.raises(ProviderFailedError) as ei:
        asyncio.run(adapter.call_once("P", "C", CancellationToken()))
    assert "Gemini model is currently overloaded" in str(ei.value)
    assert len(models.calls) == 3


def test_invalid_key_from_api(monkeypatch):
    adapter = make_adapter(monkeypatch)
    models = adapter.client.aio.models
    models.errors = [_ApiError("API key not valid. Please pass a valid API key.", 400, "INVALID_ARGUMENT")]
    with pytest.raises(UnauthorizedError):
        asyncio.run(adapter.call_streaming("P", "C", lambda _c: None, CancellationToken()))
    assert len(models.calls) == 1


def test_missing_key_rejected(monkeypatch):
    monkeypatch.setattr(ga.genai, "Client", _FakeClient, raising=True)
    with pytest.raises(UnauthorizedError):
        ga.GeminiAdapter(model="m", api_key="")


def test_cancel_mid_stream_closes_reader(monkeypatch):
    adapter = make_adapter(monkeypatch)
    models = adapter.client.aio.models
    token = CancellationToken()
    chunks = []

    def on_chunk(piece):
        chunks.append(piece)
        token.cancel()

    with pytest.raises(UserCancelledError):
        asyncio.run(adapter.call_streaming("P", "C", on_chunk, token))
    assert chunks == ["A"]
    assert models.streams[0].closed
    assert len(models.calls) == 1


def test_failed_stream_attempt_text_is_discarded(monkeypatch):
    adapter = make_adapter(monkeypatch)
    models = adapter.client.aio.models
    models.scripts = [["X", _ApiError("backend error", 503, "UNAVAILABLE")]]
    chunks = []
    out = asyncio.run(adapter.call_streaming("P", "C", chunks.append, CancellationToken()))
    assert out == "ABC"
    assert chunks == ["X", "A", "B", "C"]
    assert len(models.calls) == 2
    assert models.streams[0].closed
