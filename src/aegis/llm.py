# Aegis Guard - AI Reasoning Backends
"""
Thin httpx clients for hosted and local language models, plus the
structured reasoning layer the analysis stage consumes.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from .events import SecurityEvent, Severity

logger = logging.getLogger("aegis.llm")


class ProviderError(RuntimeError):
    """A language model backend returned an unusable response."""


class LLMProvider(ABC):
    """
    One text completion backend.

    Subclasses describe their endpoint through ``_endpoint``, ``_headers``,
    ``_payload`` and ``_extract``; the HTTP round trip is shared.
    """

    name = "llm"
    DEFAULT_MODEL = "unknown"

    def __init__(self, model: Optional[str] = None, timeout: float = 120.0):
        self.model = model or self.DEFAULT_MODEL
        self.timeout = timeout

    @abstractmethod
    def _endpoint(self) -> str:
        ...

    def _headers(self) -> dict[str, str]:
        return {"content-type": "application/json"}

    @abstractmethod
    def _payload(self, prompt: str, system: Optional[str], model: str,
                 temperature: float, max_tokens: int) -> dict[str, Any]:
        ...

    @abstractmethod
    def _extract(self, data: dict[str, Any]) -> str:
        ...

    async def generate(
        self,
        prompt: str,
        system: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> str:
        """
        Send one prompt and return the completion text.

        Raises:
            ProviderError: on a non-200 status or a body without text
        """
        payload = self._payload(prompt, system, model or self.model, temperature, max_tokens)

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self._endpoint(), headers=self._headers(), json=payload)

        if response.status_code != 200:
            raise ProviderError(f"{self.name} returned {response.status_code}: {response.text[:200]}")

        try:
            return self._extract(response.json())
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ProviderError(f"{self.name} response missing completion text: {e}") from e

    async def is_available(self) -> bool:
        return True

    def get_model_name(self) -> str:
        return self.model


class _KeyedProvider(LLMProvider):
    """Hosted backend authenticated with an API key from the environment."""

    KEY_ENV = ""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, timeout: float = 120.0):
        super().__init__(model=model, timeout=timeout)
        self.api_key = api_key or os.getenv(self.KEY_ENV)
        if not self.api_key:
            raise ValueError(f"{self.name} needs an API key (set {self.KEY_ENV})")

    async def is_available(self) -> bool:
        return bool(self.api_key)


class AnthropicProvider(_KeyedProvider):
    name = "anthropic"
    KEY_ENV = "ANTHROPIC_API_KEY"
    DEFAULT_MODEL = "claude-sonnet-4-20250514"
    API_VERSION = "2023-06-01"

    def _endpoint(self) -> str:
        return "https://api.anthropic.com/v1/messages"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers.update({"x-api-key": self.api_key, "anthropic-version": self.API_VERSION})
        return headers

    def _payload(self, prompt, system, model, temperature, max_tokens):
        body = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system:
            body["system"] = system
        return body

    def _extract(self, data):
        blocks = [b.get("text", "") for b in data["content"] if b.get("type", "text") == "text"]
        return "".join(blocks)


class OpenAIProvider(_KeyedProvider):
    name = "openai"
    KEY_ENV = "OPENAI_API_KEY"
    DEFAULT_MODEL = "gpt-4o"

    def _endpoint(self) -> str:
        return "https://api.openai.com/v1/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, prompt, system, model, temperature, max_tokens):
        chat = [{"role": "system", "content": system}] if system else []
        chat.append({"role": "user", "content": prompt})
        return {"model": model, "messages": chat, "temperature": temperature, "max_tokens": max_tokens}

    def _extract(self, data):
        return data["choices"][0]["message"]["content"] or ""


class OllamaProvider(LLMProvider):
    """Local inference through an Ollama daemon."""

    name = "ollama"
    DEFAULT_MODEL = "llama3"

    def __init__(self, base_url: Optional[str] = None, model: Optional[str] = None, timeout: float = 300.0):
        super().__init__(model=model, timeout=timeout)
        self.base_url = (base_url or os.getenv("OLLAMA_HOST") or "http://localhost:11434").rstrip("/")

    def _endpoint(self) -> str:
        return f"{self.base_url}/api/generate"

    def _payload(self, prompt, system, model, temperature, max_tokens):
        body = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if system:
            body["system"] = system
        return body

    def _extract(self, data):
        return data.get("response", "")

    async def is_available(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=3.0) as client:
                response = await client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError:
            return False
        return response.status_code == 200


PROVIDERS: dict[str, type[LLMProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "ollama": OllamaProvider,
}


def get_provider(
    provider: str = "anthropic",
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
    **kwargs,
) -> LLMProvider:
    """
    Instantiate a backend by name.

    ``base_url`` only applies to local backends and ``api_key`` only to
    hosted ones; whichever does not apply is ignored.

    Raises:
        ValueError: unknown backend name, or a hosted backend without a key
    """
    provider_class = PROVIDERS.get(provider.lower())
    if provider_class is None:
        raise ValueError(f"Unknown AI provider '{provider}' (choose from {', '.join(PROVIDERS)})")

    if issubclass(provider_class, _KeyedProvider):
        return provider_class(api_key=api_key, model=model, **kwargs)
    return provider_class(base_url=base_url, model=model, **kwargs)


ANALYSIS_SYSTEM_PROMPT = """You are a host security analyst reviewing a single detection.

Weigh the rule matches, threat intelligence and baseline deviation you are given
and decide how likely the activity is to be malicious.

OUTPUT FORMAT:
Respond with a valid JSON object only. No markdown, no text outside the JSON.
{
    "summary": "One or two sentences explaining the assessment",
    "confidence": 0.0-1.0,
    "severity": "critical|high|medium|low|info",
    "recommendations": ["action1", "action2"]
}
"""

CLASSIFY_SYSTEM_PROMPT = """You map security events to MITRE ATT&CK.

Respond with a valid JSON object only:
{
    "technique": "T1110" or null,
    "severity": "critical|high|medium|low|info",
    "confidence": 0.0-1.0,
    "description": "short technique name"
}
"""


@dataclass
class AIAnalysis:
    """Result of an AI analysis request."""
    summary: str
    confidence: float  # 0.0 - 1.0
    severity: Severity = Severity.INFO
    recommendations: list[str] = field(default_factory=list)


@dataclass
class AIClassification:
    """MITRE ATT&CK classification of one event."""
    technique: Optional[str] = None
    severity: Severity = Severity.INFO
    confidence: float = 0.0
    description: str = ""


class ReasoningProvider(ABC):
    """What the analysis stage needs from an AI backend."""

    @abstractmethod
    async def is_available(self) -> bool:
        ...

    @abstractmethod
    async def analyze(self, prompt: str) -> AIAnalysis:
        ...

    @abstractmethod
    async def classify(self, event: SecurityEvent) -> AIClassification:
        ...


_DECODER = json.JSONDecoder()


def extract_json(response: str) -> dict[str, Any]:
    """
    Pull the first JSON object out of an LLM response.

    Models wrap their answer in prose or markdown fences often enough that
    each ``{`` is tried as the start of an object until one decodes.

    Raises:
        ValueError: when no JSON object can be decoded
    """
    index = response.find("{")
    while index != -1:
        try:
            return _DECODER.raw_decode(response, index)[0]
        except json.JSONDecodeError:
            index = response.find("{", index + 1)
    raise ValueError("No JSON object found in model response")


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return max(0.0, min(1.0, confidence))


class LLMReasoningProvider(ReasoningProvider):
    """Turns free-text LLM completions into structured analysis results."""

    def __init__(self, provider: LLMProvider, temperature: float = 0.1, max_tokens: int = 1024):
        self.provider = provider
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def is_available(self) -> bool:
        return await self.provider.is_available()

    async def analyze(self, prompt: str) -> AIAnalysis:
        response = await self.provider.generate(
            prompt=prompt,
            system=ANALYSIS_SYSTEM_PROMPT,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        data = extract_json(response)
        recommendations = data.get("recommendations") or []
        return AIAnalysis(
            summary=str(data.get("summary", "")),
            confidence=_clamp_confidence(data.get("confidence")),
            severity=Severity.parse(data.get("severity")),
            recommendations=[str(r) for r in recommendations] if isinstance(recommendations, list) else [],
        )

    async def classify(self, event: SecurityEvent) -> AIClassification:
        prompt = (
            f"Source: {event.source.value}\n"
            f"Category: {event.category}\n"
            f"Severity: {event.severity.value}\n"
            f"Description: {event.description[:500]}\n"
            f"Metadata: {json.dumps(event.metadata, default=str)[:1000]}"
        )
        response = await self.provider.generate(
            prompt=prompt,
            system=CLASSIFY_SYSTEM_PROMPT,
            temperature=self.temperature,
            max_tokens=256,
        )
        data = extract_json(response)
        return AIClassification(
            technique=data.get("technique") or None,
            severity=Severity.parse(data.get("severity")),
            confidence=_clamp_confidence(data.get("confidence")),
            description=str(data.get("description", "")),
        )


def create_reasoning_provider(
    provider: Optional[str],
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    base_url: Optional[str] = None,
) -> Optional[LLMReasoningProvider]:
    """Build a reasoning provider, or None when none is configured or it cannot be created."""
    if not provider:
        return None
    try:
        backend = get_provider(provider, model=model, api_key=api_key, base_url=base_url)
    except ValueError as e:
        logger.warning(f"AI reasoning disabled: {e}")
        return None
    logger.info(f"AI reasoning enabled with {provider}/{backend.get_model_name()}")
    return LLMReasoningProvider(backend)
