"""
AI completion providers.
OpenAI and Anthropic are called through their vendor SDKs, Ollama over plain
HTTP. Each provider turns a CompletionRequest into a CompletionResponse,
raising AIServiceError with a retryable flag when the call fails.
"""

import time
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import anthropic
import openai
import requests

from farol_analyzer.config import AIConfig
from farol_analyzer.utils.result import AIErrorCode

logger = logging.getLogger(__name__)

# USD per 1M tokens
PRICING: Dict[str, Dict[str, float]] = {
    "gpt-4o": {"input": 2.5, "output": 10},
    "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "claude-3-5-sonnet-latest": {"input": 3, "output": 15},
    "claude-3-5-haiku-latest": {"input": 0.8, "output": 4},
    "default": {"input": 0, "output": 0},
}

MALFORMED_RESPONSE_ERRORS = (ValueError, KeyError, IndexError, TypeError, AttributeError)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    pricing = PRICING.get(model, PRICING["default"])
    return (input_tokens * pricing["input"] + output_tokens * pricing["output"]) / 1_000_000


@dataclass
class CompletionRequest:
    prompt: str
    system_prompt: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@dataclass
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class CompletionResponse:
    content: str
    model: str
    provider: str
    latency_ms: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)


class AIServiceError(Exception):
    """Provider failure carrying an AIErrorCode and whether a retry may help."""

    def __init__(self, code: str, message: str, provider: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider = provider
        self.retryable = retryable


class CompletionProvider(ABC):
    """Capability interface: complete(request) -> response."""

    name = "base"

    def __init__(self, config: AIConfig):
        self.config = config
        self.model = config.model

    def max_tokens(self, request: CompletionRequest) -> int:
        return request.max_tokens or self.config.max_tokens

    def temperature(self, request: CompletionRequest) -> float:
        return request.temperature if request.temperature is not None else self.config.temperature

    @abstractmethod
    def send(self, request: CompletionRequest) -> CompletionResponse:
        """Run one call against the backend, raising AIServiceError on failure."""

    def usage(self, input_tokens: int, output_tokens: int) -> TokenUsage:
        return TokenUsage(input_tokens, output_tokens, calculate_cost(self.model, input_tokens, output_tokens))

    def _error_for_status(self, status: int, text: str) -> AIServiceError:
        if status == 429:
            return AIServiceError(AIErrorCode.RATE_LIMIT, f"{self.name} rate limit: {text[:200]}", self.name, True)
        if status == 408:
            return AIServiceError(AIErrorCode.TIMEOUT, f"{self.name} request timeout", self.name, True)
        if status in (401, 403):
            return AIServiceError(AIErrorCode.INVALID_CONFIG, f"{self.name} rejected credentials ({status})", self.name, False)
        return AIServiceError(
            AIErrorCode.API_ERROR,
            f"{self.name} API error: {status} - {text[:200]}",
            self.name,
            status >= 500,
        )

    def _malformed(self, error: Exception) -> AIServiceError:
        return AIServiceError(
            AIErrorCode.INVALID_RESPONSE, f"Malformed {self.name} response: {error}", self.name, False
        )

    def complete(self, request: CompletionRequest) -> CompletionResponse:
        start = time.monotonic()
        completion = self.send(request)
        completion.latency_ms = int((time.monotonic() - start) * 1000)
        return completion


class SDKProvider(CompletionProvider):
    """
    Provider backed by a vendor SDK client.

    The SDK's own retries are disabled so AIService owns the backoff. Both
    SDKs share the same exception hierarchy, which `sdk` points at.
    """

    sdk: Any = None

    def __init__(self, config: AIConfig, client: Any = None):
        super().__init__(config)
        self.client = client if client is not None else self.create_client()

    def client_options(self) -> Dict[str, Any]:
        return {
            "api_key": self.config.api_key,
            "base_url": self.config.base_url or None,
            "timeout": self.config.timeout_ms / 1000.0,
            "max_retries": 0,
        }

    @abstractmethod
    def create_client(self) -> Any:
        pass

    @abstractmethod
    def build_kwargs(self, request: CompletionRequest) -> Dict[str, Any]:
        pass

    @abstractmethod
    def call(self, **kwargs) -> Any:
        pass

    @abstractmethod
    def parse_response(self, message: Any) -> CompletionResponse:
        pass

    def send(self, request: CompletionRequest) -> CompletionResponse:
        try:
            message = self.call(**self.build_kwargs(request))
        except self.sdk.APITimeoutError as e:
            raise AIServiceError(AIErrorCode.TIMEOUT, f"{self.name} timed out: {e}", self.name, True)
        except self.sdk.APIConnectionError as e:
            raise AIServiceError(AIErrorCode.NETWORK_ERROR, str(e), self.name, True)
        except self.sdk.APIStatusError as e:
            raise self._error_for_status(e.status_code, e.message)
        except self.sdk.APIError as e:
            raise self._malformed(e)

        try:
            return self.parse_response(message)
        except MALFORMED_RESPONSE_ERRORS as e:
            raise self._malformed(e)


class OpenAIProvider(SDKProvider):
    """OpenAI chat completions (also works with compatible endpoints via base_url)."""

    name = "openai"
    sdk = openai

    def create_client(self) -> openai.OpenAI:
        return openai.OpenAI(**self.client_options())

    def build_kwargs(self, request: CompletionRequest) -> Dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens(request),
            "temperature": self.temperature(request),
        }

    def call(self, **kwargs) -> Any:
        return self.client.chat.completions.create(**kwargs)

    def parse_response(self, message: Any) -> CompletionResponse:
        content = message.choices[0].message.content
        usage = message.usage
        input_tokens = int(usage.prompt_tokens) if usage else 0
        output_tokens = int(usage.completion_tokens) if usage else 0
        return CompletionResponse(
            content=content or "",
            model=message.model or self.model,
            provider=self.name,
            usage=self.usage(input_tokens, output_tokens),
        )


class AnthropicProvider(SDKProvider):
    name = "anthropic"
    sdk = anthropic

    def create_client(self) -> anthropic.Anthropic:
        return anthropic.Anthropic(**self.client_options())

    def build_kwargs(self, request: CompletionRequest) -> Dict[str, Any]:
        kwargs = {
            "model": self.model,
            "max_tokens": self.max_tokens(request),
            "temperature": self.temperature(request),
            "messages": [{"role": "user", "content": request.prompt}],
        }
        if request.system_prompt:
            kwargs["system"] = request.system_prompt
        return kwargs

    def call(self, **kwargs) -> Any:
        return self.client.messages.create(**kwargs)

    def parse_response(self, message: Any) -> CompletionResponse:
        content = "".join(block.text for block in message.content if block.type == "text")
        usage = message.usage
        input_tokens = int(usage.input_tokens) if usage else 0
        output_tokens = int(usage.output_tokens) if usage else 0
        return CompletionResponse(
            content=content,
            model=message.model or self.model,
            provider=self.name,
            usage=self.usage(input_tokens, output_tokens),
        )


class OllamaProvider(CompletionProvider):
    """Local models served by Ollama. Token usage is reported, cost is zero."""

    name = "ollama"
    default_base_url = "http://localhost:11434"

    def __init__(self, config: AIConfig, session: Optional[requests.Session] = None):
        super().__init__(config)
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self.session = session or requests.Session()

    def endpoint(self) -> str:
        return f"{self.base_url}/api/generate"

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        prompt = request.prompt
        if request.system_prompt:
            prompt = f"{request.system_prompt}\n\n{request.prompt}"
        return {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "num_predict": self.max_tokens(request),
                "temperature": self.temperature(request),
            },
        }

    def parse_response(self, data: Dict[str, Any]) -> CompletionResponse:
        return CompletionResponse(
            content=data["response"],
            model=data.get("model", self.model),
            provider=self.name,
            usage=TokenUsage(int(data.get("prompt_eval_count", 0)), int(data.get("eval_count", 0)), 0.0),
        )

    def send(self, request: CompletionRequest) -> CompletionResponse:
        try:
            response = self.session.post(
                self.endpoint(),
                json=self.build_payload(request),
                headers={"Content-Type": "application/json"},
                timeout=self.config.timeout_ms / 1000.0,
            )
        except requests.Timeout as e:
            raise AIServiceError(AIErrorCode.TIMEOUT, f"{self.name} timed out: {e}", self.name, True)
        except requests.ConnectionError:
            raise AIServiceError(
                AIErrorCode.PROVIDER_NOT_AVAILABLE,
                f"Ollama is not running at {self.base_url}. Start it with 'ollama serve'",
                self.name,
                False,
            )
        except requests.RequestException as e:
            raise AIServiceError(AIErrorCode.NETWORK_ERROR, str(e), self.name, True)

        if response.status_code >= 400:
            raise self._error_for_status(response.status_code, response.text)
        try:
            return self.parse_response(response.json())
        except MALFORMED_RESPONSE_ERRORS as e:
            raise self._malformed(e)


PROVIDERS = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "ollama": OllamaProvider,
}


def create_provider(
    config: AIConfig,
    session: Optional[requests.Session] = None,
    client: Any = None,
) -> CompletionProvider:
    """
    Pick the provider class named by the configuration.

    Args:
        config: AI settings
        session: HTTP session for Ollama
        client: Prebuilt SDK client for OpenAI or Anthropic

    Raises:
        AIServiceError: INVALID_CONFIG for an unknown provider or a missing API key
    """
    provider_cls = PROVIDERS.get(config.provider)
    if provider_cls is None:
        raise AIServiceError(AIErrorCode.INVALID_CONFIG, f"Unknown provider: {config.provider}")
    if provider_cls is OllamaProvider:
        return OllamaProvider(config, session=session)
    if not config.api_key:
        raise AIServiceError(
            AIErrorCode.INVALID_CONFIG,
            f"Missing API key for provider {config.provider}",
            config.provider,
        )
    return provider_cls(config, client=client)
