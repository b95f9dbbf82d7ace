"""Tests for the AI backends and the structured reasoning layer."""

import json

import httpx
import pytest

from aegis import llm
from aegis.events import Severity
from aegis.llm import (
    AnthropicProvider,
    LLMProvider,
    LLMReasoningProvider,
    OllamaProvider,
    OpenAIProvider,
    ProviderError,
    create_reasoning_provider,
    extract_json,
    get_provider,
)

from conftest import make_event


@pytest.fixture
def transport(monkeypatch):
    """Route every httpx client in aegis.llm through a recording mock transport."""
    seen = []
    replies = []
    real_client = httpx.AsyncClient

    def handler(request):
        seen.append(request)
        return replies.pop(0)

    mock = httpx.MockTransport(handler)
    monkeypatch.setattr(llm.httpx, "AsyncClient", lambda **kw: real_client(transport=mock, **kw))
    return seen, replies


class CannedProvider(LLMProvider):
    name = "canned"

    def __init__(self, reply):
        super().__init__(model="canned-1")
        self.reply = reply
        self.prompts = []

    def _endpoint(self):
        return "http://unused"

    def _payload(self, prompt, system, model, temperature, max_tokens):
        return {}

    def _extract(self, data):
        return ""

    async def generate(self, prompt, system=None, model=None, temperature=0.7, max_tokens=4096):
        self.prompts.append((prompt, system))
        return self.reply


class TestGetProvider:
    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown AI provider"):
            get_provider("skynet")

    def test_hosted_needs_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ValueError, match="OPENAI_API_KEY"):
            get_provider("openai")

    def test_hosted_ignores_base_url(self):
        provider = get_provider("Anthropic", api_key="k", base_url="http://ignored")

        assert isinstance(provider, AnthropicProvider)
        assert provider.get_model_name() == AnthropicProvider.DEFAULT_MODEL

    def test_local(self):
        provider = get_provider("ollama", model="mistral", base_url="http://gpu-box:11434/")

        assert isinstance(provider, OllamaProvider)
        assert provider.base_url == "http://gpu-box:11434"
        assert provider.get_model_name() == "mistral"


class TestGenerate:
    """Request shape and response handling per backend."""

    @pytest.mark.asyncio
    async def test_anthropic(self, transport):
        seen, replies = transport
        replies.append(httpx.Response(200, json={"content": [{"type": "text", "text": "hello"}]}))

        text = await AnthropicProvider(api_key="k").generate("hi", system="be brief", max_tokens=10)

        assert text == "hello"
        body = json.loads(seen[0].content)
        assert seen[0].headers["x-api-key"] == "k"
        assert body["system"] == "be brief"
        assert body["max_tokens"] == 10

    @pytest.mark.asyncio
    async def test_openai(self, transport):
        seen, replies = transport
        replies.append(httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}))

        text = await OpenAIProvider(api_key="k").generate("hi", system="sys", model="gpt-x")

        assert text == "ok"
        body = json.loads(seen[0].content)
        assert seen[0].headers["authorization"] == "Bearer k"
        assert body["model"] == "gpt-x"
        assert [m["role"] for m in body["messages"]] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_ollama(self, transport):
        seen, replies = transport
        replies.append(httpx.Response(200, json={"response": "local"}))

        text = await OllamaProvider().generate("hi", temperature=0.2)

        assert text == "local"
        assert seen[0].url.path == "/api/generate"
        body = json.loads(seen[0].content)
        assert body["stream"] is False
        assert body["options"]["temperature"] == 0.2
        assert "system" not in body

    @pytest.mark.asyncio
    async def test_error_status(self, transport):
        _, replies = transport
        replies.append(httpx.Response(429, text="slow down"))

        with pytest.raises(ProviderError, match="429"):
            await OpenAIProvider(api_key="k").generate("hi")

    @pytest.mark.asyncio
    async def test_malformed_body(self, transport):
        _, replies = transport
        replies.append(httpx.Response(200, json={"choices": []}))

        with pytest.raises(ProviderError):
            await OpenAIProvider(api_key="k").generate("hi")

    @pytest.mark.asyncio
    async def test_ollama_availability(self, transport):
        _, replies = transport
        replies.append(httpx.Response(200, json={"models": []}))
        replies.append(httpx.Response(500))

        provider = OllamaProvider()

        assert await provider.is_available()
        assert not await provider.is_available()


class TestExtractJson:
    def test_fenced_block(self):
        assert extract_json('Sure:\n```json\n{"confidence": 0.5}\n```') == {"confidence": 0.5}

    def test_surrounding_text(self):
        assert extract_json('verdict {"summary": "x"} done') == {"summary": "x"}

    def test_no_json(self):
        with pytest.raises(ValueError):
            extract_json("I cannot help with that")


class TestReasoning:
    @pytest.mark.asyncio
    async def test_analyze_clamps_confidence(self):
        backend = CannedProvider('{"summary": "brute force", "confidence": 1.7, "severity": "HIGH"}')

        analysis = await LLMReasoningProvider(backend).analyze("detection details")

        assert analysis.confidence == 1.0
        assert analysis.severity == Severity.HIGH
        assert analysis.recommendations == []
        assert backend.prompts[0][0] == "detection details"

    @pytest.mark.asyncio
    async def test_classify(self):
        backend = CannedProvider('{"technique": "T1110", "confidence": 0.6, "description": "Brute Force"}')

        result = await LLMReasoningProvider(backend).classify(make_event())

        assert result.technique == "T1110"
        assert result.confidence == 0.6
        assert "Category: authentication" in backend.prompts[0][0]

    def test_create_disabled(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

        assert create_reasoning_provider(None) is None
        assert create_reasoning_provider("anthropic") is None

    def test_create_local(self):
        reasoning = create_reasoning_provider("ollama", base_url="http://localhost:11434")

        assert isinstance(reasoning.provider, OllamaProvider)
