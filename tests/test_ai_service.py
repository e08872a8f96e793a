"""
Tests for the AI completion providers and the retrying service.
"""

import unittest
from types import SimpleNamespace

import anthropic
import httpx
import openai
import requests

from contract_fixtures import FakeSession

from farol_analyzer.ai.providers import (
    AIServiceError,
    AnthropicProvider,
    CompletionRequest,
    OllamaProvider,
    OpenAIProvider,
    calculate_cost,
    create_provider,
)
from farol_analyzer.ai.service import AIService, create_ai_service
from farol_analyzer.config import AIConfig
from farol_analyzer.utils.result import AIErrorCode

OPENAI_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
ANTHROPIC_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def openai_answer(content='{"category": "TI"}'):
    return SimpleNamespace(
        model="gpt-4o-mini",
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
        usage=SimpleNamespace(prompt_tokens=1000, completion_tokens=100),
    )


def status_error(error_cls, status, request=OPENAI_REQUEST, message="error"):
    return error_cls(message, response=httpx.Response(status, request=request), body=None)


class ScriptedCalls:
    """Each call consumes the next scripted item; exceptions are raised."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeOpenAIClient:
    def __init__(self, outcomes):
        self.completions = ScriptedCalls(outcomes)
        self.chat = SimpleNamespace(completions=self.completions)


class FakeAnthropicClient:
    def __init__(self, outcomes):
        self.messages = ScriptedCalls(outcomes)


def openai_service(outcomes, retry_attempts=3):
    sleeps = []
    client = FakeOpenAIClient(outcomes)
    config = AIConfig(api_key="sk-test", retry_attempts=retry_attempts, retry_delay_ms=1000)
    service = AIService(config, client=client, sleep=sleeps.append)
    return service, client.completions, sleeps


class TestProviders(unittest.TestCase):
    def test_openai_arguments(self):
        provider = OpenAIProvider(AIConfig(api_key="sk-test"), client=FakeOpenAIClient([]))
        kwargs = provider.build_kwargs(CompletionRequest("Olá", system_prompt="Sistema", max_tokens=50))
        self.assertEqual(kwargs["messages"][0], {"role": "system", "content": "Sistema"})
        self.assertEqual(kwargs["messages"][1], {"role": "user", "content": "Olá"})
        self.assertEqual(kwargs["max_tokens"], 50)
        self.assertEqual(kwargs["temperature"], 0.7)
        self.assertEqual(kwargs["model"], "gpt-4o-mini")

    def test_openai_client_from_config(self):
        provider = OpenAIProvider(AIConfig(api_key="sk-test", timeout_ms=5000))
        self.assertIsInstance(provider.client, openai.OpenAI)
        self.assertEqual(provider.client.api_key, "sk-test")
        self.assertEqual(provider.client.max_retries, 0)

    def test_anthropic_arguments_and_response(self):
        client = FakeAnthropicClient(
            [
                SimpleNamespace(
                    model="claude-3-5-haiku-latest",
                    content=[
                        SimpleNamespace(type="text", text="a"),
                        SimpleNamespace(type="tool_use", text="ignored"),
                        SimpleNamespace(type="text", text="b"),
                    ],
                    usage=SimpleNamespace(input_tokens=10, output_tokens=2),
                )
            ]
        )
        provider = AnthropicProvider(
            AIConfig(provider="anthropic", model="claude-3-5-haiku-latest", api_key="k"), client=client
        )
        response = provider.complete(CompletionRequest("Olá", system_prompt="Sistema", temperature=0.1))
        sent = client.messages.calls[0]
        self.assertEqual(sent["system"], "Sistema")
        self.assertEqual(sent["temperature"], 0.1)
        self.assertEqual(sent["messages"], [{"role": "user", "content": "Olá"}])
        self.assertEqual(response.content, "ab")
        self.assertEqual(response.provider, "anthropic")
        self.assertEqual(response.usage.input_tokens, 10)

    def test_anthropic_overloaded_is_retryable(self):
        client = FakeAnthropicClient([status_error(anthropic.APIStatusError, 529, ANTHROPIC_REQUEST)])
        provider = AnthropicProvider(AIConfig(provider="anthropic", api_key="k"), client=client)
        with self.assertRaises(AIServiceError) as ctx:
            provider.complete(CompletionRequest("Olá"))
        self.assertEqual(ctx.exception.code, AIErrorCode.API_ERROR)
        self.assertTrue(ctx.exception.retryable)

    def test_ollama_prefixes_system_prompt(self):
        provider = OllamaProvider(AIConfig(provider="ollama", model="llama3"))
        payload = provider.build_payload(CompletionRequest("Olá", system_prompt="Sistema"))
        self.assertEqual(payload["prompt"], "Sistema\n\nOlá")
        self.assertFalse(payload["stream"])
        self.assertEqual(provider.endpoint(), "http://localhost:11434/api/generate")

    def test_ollama_not_running(self):
        session = FakeSession([requests.ConnectionError("refused")])
        provider = OllamaProvider(AIConfig(provider="ollama"), session=session)
        with self.assertRaises(AIServiceError) as ctx:
            provider.complete(CompletionRequest("Olá"))
        self.assertEqual(ctx.exception.code, AIErrorCode.PROVIDER_NOT_AVAILABLE)
        self.assertFalse(ctx.exception.retryable)

    def test_create_provider(self):
        self.assertIsInstance(create_provider(AIConfig(api_key="k")), OpenAIProvider)
        self.assertIsInstance(
            create_provider(AIConfig(provider="anthropic", api_key="k")), AnthropicProvider
        )
        self.assertIsInstance(create_provider(AIConfig(provider="ollama")), OllamaProvider)
        with self.assertRaises(AIServiceError):
            create_provider(AIConfig(provider="openai", api_key=None))
        with self.assertRaises(AIServiceError):
            create_provider(AIConfig(provider="other", api_key="k"))

    def test_cost(self):
        self.assertAlmostEqual(calculate_cost("gpt-4o-mini", 1000000, 1000000), 0.75)
        self.assertEqual(calculate_cost("unknown-model", 1000, 1000), 0.0)


class TestAIService(unittest.TestCase):
    def test_prompt_returns_text(self):
        service, calls, _ = openai_service([openai_answer()])
        result = service.prompt("Classifique", system_prompt="Sistema")
        self.assertTrue(result.ok)
        self.assertEqual(result.value, '{"category": "TI"}')
        self.assertEqual(calls.calls[0]["messages"][0]["content"], "Sistema")

        stats = service.get_stats()
        self.assertEqual(stats.total_requests, 1)
        self.assertEqual(stats.successful_requests, 1)
        self.assertEqual(stats.total_input_tokens, 1000)
        self.assertEqual(stats.total_output_tokens, 100)

    def test_retries_rate_limit_with_backoff(self):
        service, calls, sleeps = openai_service(
            [
                status_error(openai.RateLimitError, 429, message="slow down"),
                status_error(openai.InternalServerError, 500),
                openai_answer(),
            ]
        )
        result = service.prompt("Classifique")
        self.assertTrue(result.ok)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual(len(calls.calls), 3)

    def test_does_not_retry_bad_credentials(self):
        service, calls, sleeps = openai_service(
            [status_error(openai.AuthenticationError, 401, message="invalid key")]
        )
        result = service.prompt("Classifique")
        self.assertFalse(result.ok)
        self.assertEqual(result.error.code, AIErrorCode.INVALID_CONFIG)
        self.assertEqual(len(calls.calls), 1)
        self.assertEqual(sleeps, [])
        self.assertEqual(service.get_stats().failed_requests, 1)

    def test_malformed_response(self):
        service, _, _ = openai_service([SimpleNamespace(unexpected=True)])
        result = service.prompt("Classifique")
        self.assertEqual(result.error.code, AIErrorCode.INVALID_RESPONSE)

    def test_gives_up_after_attempts(self):
        service, calls, sleeps = openai_service(
            [openai.APITimeoutError(request=OPENAI_REQUEST)] * 2, retry_attempts=2
        )
        result = service.prompt("Classifique")
        self.assertEqual(result.error.code, AIErrorCode.TIMEOUT)
        self.assertTrue(result.error.retryable)
        self.assertEqual(len(calls.calls), 2)
        self.assertEqual(sleeps, [1.0])

    def test_connection_error_is_retried(self):
        service, calls, _ = openai_service(
            [openai.APIConnectionError(request=OPENAI_REQUEST), openai_answer()]
        )
        self.assertTrue(service.prompt("Classifique").ok)
        self.assertEqual(len(calls.calls), 2)

    def test_reset_stats(self):
        service, _, _ = openai_service([openai_answer()])
        service.prompt("Classifique")
        service.reset_stats()
        self.assertEqual(service.get_stats().total_requests, 0)

    def test_provider_and_stats_logging(self):
        service, _, _ = openai_service([openai_answer()])
        self.assertEqual(service.get_provider(), {"provider": "openai", "model": "gpt-4o-mini"})
        service.prompt("Classifique")
        with self.assertLogs("farol_analyzer.ai.service", level="INFO") as logs:
            service.log_stats()
        self.assertIn("Requests: 1/1 successful", logs.output[0])

    def test_create_ai_service_without_key(self):
        self.assertIsNone(create_ai_service(AIConfig(provider="openai", api_key=None)))


if __name__ == "__main__":
    unittest.main()
