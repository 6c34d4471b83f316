"""
Tests for the text generation port and its Ollama adapter.
"""

import asyncio
import json

import httpx
import pytest

from antidip.text_generation import (
    NullTextGenerator,
    OllamaTextGenerator,
    compact_text,
    generate_bounded,
    parse_title_body,
)


def ollama_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestCompactText:

    def test_collapses_whitespace_and_controls(self):
        assert compact_text("  hello\n\tworld\x07 ", 50) == "hello world"

    def test_truncates_with_ellipsis(self):
        assert compact_text("abcdefghij", 5) == "abcd…"

    def test_non_string(self):
        assert compact_text(None, 10) == ""
        assert compact_text(42, 10) == ""


class TestOllamaTextGenerator:

    @pytest.mark.asyncio
    async def test_success(self):
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, json={"response": "  Ship the last 10% today.  "})

        async with ollama_client(handler) as client:
            generator = OllamaTextGenerator("http://ollama:11434/", model="llama3", client=client)
            text = await generator.generate("tip please", max_tokens=40)

        assert text == "Ship the last 10% today."
        assert requests[0]["model"] == "llama3"
        assert requests[0]["stream"] is False
        assert requests[0]["options"]["num_predict"] == 40

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        async with ollama_client(lambda request: httpx.Response(503)) as client:
            generator = OllamaTextGenerator("http://ollama:11434", client=client)
            assert await generator.generate("tip") is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        async with ollama_client(lambda request: httpx.Response(200, content=b"<html>")) as client:
            generator = OllamaTextGenerator("http://ollama:11434", client=client)
            assert await generator.generate("tip") is None

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with ollama_client(handler) as client:
            generator = OllamaTextGenerator("http://ollama:11434", client=client)
            assert await generator.generate("tip") is None

    @pytest.mark.asyncio
    async def test_empty_prompt_skips_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        async with ollama_client(handler) as client:
            generator = OllamaTextGenerator("http://ollama:11434", client=client)
            assert await generator.generate("   ") is None


class TestGenerateBounded:

    @pytest.mark.asyncio
    async def test_missing_generator(self):
        assert await generate_bounded(None, "p", max_len=10) is None
        assert await generate_bounded(NullTextGenerator(), "p", max_len=10) is None

    @pytest.mark.asyncio
    async def test_timeout(self):
        class SlowGenerator:
            async def generate(self, prompt, **kwargs):
                await asyncio.sleep(5)
                return "too late"

        assert await generate_bounded(SlowGenerator(), "p", max_len=50, timeout_ms=20) is None

    @pytest.mark.asyncio
    async def test_oversized_output_rejected(self):
        class Verbose:
            async def generate(self, prompt, **kwargs):
                return "word " * 50

        assert await generate_bounded(Verbose(), "p", max_len=20) is None

    @pytest.mark.asyncio
    async def test_failure_swallowed(self):
        class Broken:
            async def generate(self, prompt, **kwargs):
                raise RuntimeError("boom")

        assert await generate_bounded(Broken(), "p", max_len=20) is None


class TestParseTitleBody:

    def test_valid(self):
        assert parse_title_body('{"title": "Go", "body": "Finish it"}') == {"title": "Go", "body": "Finish it"}

    def test_missing_field(self):
        assert parse_title_body('{"title": "Go"}') is None

    def test_not_json(self):
        assert parse_title_body("Go finish it") is None
        assert parse_title_body(None) is None
        assert parse_title_body("[1, 2]") is None
