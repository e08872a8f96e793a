"""
AI service: a configured provider plus retry with exponential backoff and
usage statistics.
"""

import time
import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Optional

import requests

from farol_analyzer.ai.providers import (
    AIServiceError,
    CompletionProvider,
    CompletionRequest,
    CompletionResponse,
    create_provider,
)
from farol_analyzer.config import AIConfig
from farol_analyzer.utils.result import AIErrorCode, Result

logger = logging.getLogger(__name__)


@dataclass
class AIServiceStats:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_cost: float = 0.0
    average_latency_ms: float = 0.0


def format_stats(stats: AIServiceStats) -> str:
    return " | ".join(
        [
            f"Requests: {stats.successful_requests}/{stats.total_requests} successful",
            f"Tokens: {stats.total_input_tokens} in / {stats.total_output_tokens} out",
            f"Cost: ${stats.total_cost:.4f}",
            f"Avg latency: {stats.average_latency_ms:.0f}ms",
        ]
    )


class AIService:
    """
    Completion service used by the classifier.

    Retryable provider errors (rate limit, timeout, 5xx, network) are retried
    up to retry_attempts times, waiting retry_delay_ms * 2^(attempt-1)
    between attempts. Configuration errors and malformed responses are not.
    """

    def __init__(
        self,
        config: Optional[AIConfig] = None,
        provider: Optional[CompletionProvider] = None,
        session: Optional[requests.Session] = None,
        client: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or AIConfig()
        self.provider = provider or create_provider(self.config, session=session, client=client)
        self._sleep = sleep
        self._lock = threading.Lock()
        self._stats = AIServiceStats()
        self._total_latency_ms = 0

    def get_provider(self) -> Dict[str, str]:
        return {"provider": self.provider.name, "model": self.provider.model}

    def _record_success(self, response: CompletionResponse) -> None:
        with self._lock:
            self._stats.successful_requests += 1
            self._stats.total_input_tokens += response.usage.input_tokens
            self._stats.total_output_tokens += response.usage.output_tokens
            self._stats.total_cost += response.usage.estimated_cost
            self._total_latency_ms += response.latency_ms
            self._stats.average_latency_ms = self._total_latency_ms / self._stats.successful_requests

        logger.debug(
            f"[AI] {response.provider}/{response.model} | "
            f"{response.usage.input_tokens}->{response.usage.output_tokens} tokens | "
            f"${response.usage.estimated_cost:.4f} | {response.latency_ms}ms"
        )

    def complete(self, request: CompletionRequest) -> Result[CompletionResponse]:
        """
        Send a completion request with automatic retry.

        Args:
            request: Prompt, optional system prompt and sampling overrides

        Returns:
            Result holding the provider response, or the last provider error
        """
        with self._lock:
            self._stats.total_requests += 1

        attempts = max(1, self.config.retry_attempts)
        last_error: Optional[AIServiceError] = None
        for attempt in range(1, attempts + 1):
            try:
                response = self.provider.complete(request)
            except AIServiceError as e:
                last_error = e
                if not e.retryable or attempt == attempts:
                    break
                delay_ms = self.config.retry_delay_ms * 2 ** (attempt - 1)
                logger.warning(f"[AI] Retry {attempt}/{attempts} after {delay_ms}ms: {e.message}")
                self._sleep(delay_ms / 1000.0)
            else:
                self._record_success(response)
                return Result.success(response)

        with self._lock:
            self._stats.failed_requests += 1
        if last_error is None:
            return Result.failure(AIErrorCode.API_ERROR, "Unknown error")
        return Result.failure(
            last_error.code,
            last_error.message,
            details={"provider": last_error.provider},
            retryable=last_error.retryable,
        )

    def prompt(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Result[str]:
        """Simple prompt completion returning only the text."""
        result = self.complete(
            CompletionRequest(
                prompt=prompt,
                system_prompt=system_prompt,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        )
        if not result.ok:
            return result
        return Result.success(result.value.content)

    def get_stats(self) -> AIServiceStats:
        with self._lock:
            return AIServiceStats(**asdict(self._stats))

    def log_stats(self) -> None:
        logger.info(f"[AI Stats] {format_stats(self.get_stats())}")

    def reset_stats(self) -> None:
        with self._lock:
            self._stats = AIServiceStats()
            self._total_latency_ms = 0


def create_ai_service(config: Optional[AIConfig] = None) -> Optional[AIService]:
    """
    Build the AI service, or return None when the provider cannot be configured.
    """
    try:
        return AIService(config)
    except AIServiceError as e:
        logger.warning(f"AI service unavailable ({e.code}): {e.message}")
        return None
