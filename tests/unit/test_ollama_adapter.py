# tests/unit/test_ollama_adapter.py

from __future__ import annotations
import sys, json
import asyncio
from pathlib import Path
import httpx
import pytest

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from labforge.core.errors import ProviderFailedError, UserCancelledError
from labforge.core.ports import CancellationToken, ImagePart, TextPart
from labforge.providers.ollama_adapter import OllamaAdapter, parse_chat_line
from labforge.resilience.retry import RetryController, RetryPolicy


async def _no_sleep(_delay, _token):
    return None


def ndjson(*records, extra=()):
    lines = [json.dumps(r) for r in records]
    lines[1:1] = list(extra)
    return ("\n".join(lines) + "\n").encode("utf-8")


def make_adapter(handler, policy=None):
    seen = []

    def wrapped(request: httpx.Request):
        seen.append(request)
        return handler(request)

    adapter = OllamaAdapter(
        "llama-test",
        transport=httpx.MockTransport(wrapped),
        retry=RetryController("Ollama", policy, sleep=_no_sleep),
    )
    return adapter, seen


def test_call_once_posts_combined_prompt():
    adapter, seen = make_adapter(
        lambda req: httpx.Response(200, json={"message": {"role": "assistant", "content": "hi"}, "done": True})
    )
    out = asyncio.run(adapter.call_once("P", "C", CancellationToken()))
    assert out == "hi"
    req = seen[0]
    assert req.url.path == "/api/chat"
    body = json.loads(req.content)
    assert body == {
        "model": "llama-test",
        "messages": [{"role": "user", "content": "P\n\n---\n\nC"}],
        "stream": False,
    }


def test_streaming_reads_json_lines_and_skips_malformed():
    content = ndjson(
        {"message": {"content": "Hel"}, "done": False},
        {"message": {"content": "lo"}, "done": False},
        {"done": True},
        extra=["not json", ""],
    )
    adapter, seen = make_adapter(lambda req: httpx.Response(200, content=content))
    chunks = []
    out = asyncio.run(adapter.call_streaming("P", "C", chunks.append, CancellationToken()))
    assert chunks == ["Hel", "lo"]
    assert out == "Hello"
    assert json.loads(seen[0].content)["stream"] is True


def test_multimodal_sends_images_field():
    adapter, seen = make_adapter(
        lambda req: httpx.Response(200, content=ndjson({"message": {"content": "ok"}}, {"done": True}))
    )
    parts = [TextPart("step one"), TextPart("step two"), ImagePart(data="aW1n", mime_type="image/png")]
    asyncio.run(adapter.call_multimodal_streaming("P", parts, lambda _c: None, CancellationToken()))
    message = json.loads(seen[0].content)["messages"][0]
    assert message["content"] == "P\n\nstep one\nstep two"
    assert message["images"] == ["aW1n"]


def test_multimodal_without_images_has_no_images_field():
    adapter, seen = make_adapter(lambda req: httpx.Response(200, content=ndjson({"done": True})))
    asyncio.run(adapter.call_multimodal_streaming("P", [TextPart("x")], lambda _c: None, CancellationToken()))
    assert "images" not in json.loads(seen[0].content)["messages"][0]


def test_unreachable_daemon_reports_url_after_all_attempts():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    adapter, seen = make_adapter(refuse)
    with pytest.raises(ProviderFailedError) as ei:
        asyncio.run(adapter.call_once("P", "C", CancellationToken()))
    assert len(seen) == 7
    assert "after 7 attempts" in str(ei.value)
    assert "localhost:11434" in str(ei.value)


def test_http_error_status_is_retried_then_reported():
    adapter, seen = make_adapter(lambda req: httpx.Response(500, text="boom"), RetryPolicy(max_retries=1))
    with pytest.raises(ProviderFailedError) as ei:
        asyncio.run(adapter.call_streaming("P", "C", lambda _c: None, CancellationToken()))
    assert len(seen) == 2
    assert "Ollama API error: 500 - boom" in str(ei.value)


def test_error_record_in_stream():
    content = ndjson({"error": "model 'nope' not found"})
    adapter, _ = make_adapter(lambda req: httpx.Response(200, content=content), RetryPolicy(max_retries=0))
    with pytest.raises(ProviderFailedError) as ei:
        asyncio.run(adapter.call_streaming("P", "C", lambda _c: None, CancellationToken()))
    assert "model 'nope' not found" in str(ei.value)


def test_cancel_during_stream():
    content = ndjson({"message": {"content": "a"}}, {"message": {"content": "b"}}, {"done": True})
    adapter, _ = make_adapter(lambda req: httpx.Response(200, content=content))
    token = CancellationToken()
    chunks = []

    def on_chunk(piece):
        chunks.append(piece)
        token.cancel()

    with pytest.raises(UserCancelledError):
        asyncio.run(adapter.call_streaming("P", "C", on_chunk, token))
    assert chunks == ["a"]


def test_parse_chat_line():
    assert parse_chat_line('{"done": true}') == {"done": True}
    assert parse_chat_line("garbage") is None
    assert parse_chat_line("   ") is None
    assert parse_chat_line("[1, 2]") is None


def test_no_images_restriction_and_default_url():
    adapter = OllamaAdapter("m", base_url="http://box:11434/")
    assert adapter.base_url == "http://box:11434"
    assert adapter.supports_images


def test_retry_discards_text_from_failed_stream():
    bodies = [
        ndjson({"message": {"content": "X"}}, {"error": "model runner crashed"}),
        ndjson({"message": {"content": "A"}}, {"message": {"content": "BC"}}, {"done": True}),
    ]
    adapter, seen = make_adapter(lambda req: httpx.Response(200, content=bodies.pop(0)))
    chunks = []
    out = asyncio.run(adapter.call_streaming("P", "C", chunks.append, CancellationToken()))
    assert out == "ABC"
    assert chunks == ["X", "A", "BC"]
    assert len(seen) == 2
