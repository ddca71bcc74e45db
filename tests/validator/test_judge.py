"""Tests for the Judge and its inference backends."""

from __future__ import annotations

import json
import time

import httpx
import pytest

from lockin.validator.judge import Judge, OllamaBackend, OpenAIChatBackend, build_backend


@pytest.mark.asyncio
class TestJudge:

    async def test_well_formed_response(self, goal, proof, fake_backend):
        backend = fake_backend('{"approved": true, "confidence": 87, "reasoning": "Distance and time are visible."}')
        result = await Judge(backend).adjudicate(goal, proof)
        assert result.approved is True
        assert result.confidence == 87
        assert result.model == "fake-model"
        assert result.inference_seconds is not None
        assert result.raw_response.startswith('{"approved"')
        assert "Run 5km" in backend.prompts[0]
        assert "Image 1: QmScreenshot" in backend.prompts[0]

    async def test_malformed_response_rejects(self, goal, proof, fake_backend):
        result = await Judge(fake_backend("I think this looks fine")).adjudicate(goal, proof)
        assert result.approved is False
        assert result.confidence == 0
        assert result.reasoning == "I think this looks fine"

    async def test_backend_error_rejects(self, goal, proof, fake_backend):
        backend = fake_backend(error=httpx.ConnectError("connection refused"))
        result = await Judge(backend).adjudicate(goal, proof)
        assert result.approved is False
        assert result.confidence == 0
        assert "connection refused" in result.reasoning

    async def test_timeout_rejects(self, goal, proof, fake_backend):
        backend = fake_backend('{"approved": true, "confidence": 99}', delay=1.0)
        result = await Judge(backend, timeout=0.05).adjudicate(goal, proof)
        assert result.approved is False
        assert result.confidence == 0
        assert "timed out" in result.reasoning

    async def test_empty_response_rejects(self, goal, proof, fake_backend):
        result = await Judge(fake_backend("")).adjudicate(goal, proof)
        assert result.approved is False
        assert result.reasoning == "Empty model response"

    async def test_out_of_range_confidence_clamped(self, goal, proof, fake_backend):
        result = await Judge(fake_backend('{"approved": true, "confidence": 400}')).adjudicate(goal, proof)
        assert result.confidence == 100

    async def test_deeply_nested_output_rejects(self, goal, proof, fake_backend):
        result = await Judge(fake_backend("[" * 100000)).adjudicate(goal, proof)
        assert result.approved is False
        assert result.confidence == 0
        assert result.degraded is True

    @pytest.mark.parametrize("raw", ["x " + "{" * 20000, "{" * 20000 + "}" * 20000, '{"a": ' * 5000 + "1" + "}" * 5000])
    async def test_pathological_braces_stay_fast(self, goal, proof, fake_backend, raw):
        start = time.monotonic()
        result = await Judge(fake_backend(raw)).adjudicate(goal, proof)
        assert time.monotonic() - start < 1.0
        assert result.approved is False

    async def test_failing_strategy_rejects(self, goal, proof, fake_backend):
        def broken(raw):
            raise RuntimeError("parser bug")

        result = await Judge(fake_backend('{"approved": true, "confidence": 90}'), strategies=(broken,)).adjudicate(goal, proof)
        assert result.approved is False
        assert result.confidence == 0
        assert result.raw_response == '{"approved": true, "confidence": 90}'


@pytest.mark.asyncio
class TestOllamaBackend:

    async def test_generate_posts_json_mode(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["path"] = request.url.path
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": '{"approved": false}'})

        backend = OllamaBackend(model="llama3.2:3b", transport=httpx.MockTransport(handler))
        try:
            text = await backend.generate("prompt")
        finally:
            await backend.close()
        assert text == '{"approved": false}'
        assert captured["path"] == "/api/generate"
        assert captured["body"]["format"] == "json"
        assert captured["body"]["stream"] is False
        assert captured["body"]["options"]["temperature"] == 0.3

    async def test_connection_and_models(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"models": [{"name": "llama3.2:3b"}]})

        backend = OllamaBackend(transport=httpx.MockTransport(handler))
        try:
            assert await backend.test_connection() is True
            assert [m["name"] for m in await backend.list_models()] == ["llama3.2:3b"]
        finally:
            await backend.close()

    async def test_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = OllamaBackend(transport=httpx.MockTransport(handler))
        try:
            assert await backend.test_connection() is False
            assert await backend.list_models() == []
            assert await backend.pull_model() is False
        finally:
            await backend.close()

    async def test_pull_model(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/pull"
            return httpx.Response(200, json={"status": "success"})

        backend = OllamaBackend(transport=httpx.MockTransport(handler))
        try:
            assert await backend.pull_model("mistral") is True
        finally:
            await backend.close()


@pytest.mark.asyncio
class TestOpenAIChatBackend:

    async def test_generate(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers.get("Authorization")
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": '{"approved": true}'}}]})

        backend = OpenAIChatBackend(api_key="sk-test", transport=httpx.MockTransport(handler))
        try:
            assert await backend.generate("prompt") == '{"approved": true}'
        finally:
            await backend.close()
        assert captured["auth"] == "Bearer sk-test"
        assert captured["body"]["messages"][0]["role"] == "system"
        assert captured["body"]["messages"][1]["content"] == "prompt"


class TestBuildBackend:

    def test_providers(self):
        assert isinstance(build_backend("ollama", api_key="ignored"), OllamaBackend)
        assert isinstance(build_backend("openai", api_key="k"), OpenAIChatBackend)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_backend("bard")
