"""
Typed results shared by every pipeline component.

Components return a Result instead of raising across module boundaries, so
callers decide explicitly whether a failure aborts a run or is only counted.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class RegistryErrorCode:
    NETWORK_ERROR = "NETWORK_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    API_ERROR = "API_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    TIMEOUT = "TIMEOUT"


class ClassificationErrorCode:
    INVALID_CONTRACT = "INVALID_CONTRACT"
    MANUAL_OVERRIDE = "MANUAL_OVERRIDE"
    INVALID_CATEGORY = "INVALID_CATEGORY"
    AI_FAILED = "AI_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"


class AnomalyErrorCode:
    INVALID_CONTRACT = "INVALID_CONTRACT"
    NO_CATEGORY = "NO_CATEGORY"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    CALCULATION_FAILED = "CALCULATION_FAILED"
    INVALID_SCOPE = "INVALID_SCOPE"


class AutoUpdateErrorCode:
    CRAWLER_ERROR = "CRAWLER_ERROR"
    CLASSIFICATION_ERROR = "CLASSIFICATION_ERROR"
    SCORE_CALCULATION_ERROR = "SCORE_CALCULATION_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    ALERT_ERROR = "ALERT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class AIErrorCode:
    INVALID_CONFIG = "INVALID_CONFIG"
    API_ERROR = "API_ERROR"
    RATE_LIMIT = "RATE_LIMIT"
    TIMEOUT = "TIMEOUT"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    PROVIDER_NOT_AVAILABLE = "PROVIDER_NOT_AVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"


@dataclass
class PipelineError:
    """
    Error value carried by a failed Result.

    Args:
        code: One of the module error code constants
        message: Human readable description, used in logs and alerts
        details: Optional extra context (status codes, ids, partial stats)
        retryable: Whether retrying the same operation may succeed
    """

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    retryable: bool = False

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ResultError(Exception):
    """Raised by Result.unwrap() on a failed result."""

    def __init__(self, error: PipelineError):
        super().__init__(str(error))
        self.error = error


class Result(Generic[T]):
    """Either a value (ok) or a PipelineError."""

    __slots__ = ("ok", "value", "error")

    def __init__(self, ok: bool, value: Optional[T] = None, error: Optional[PipelineError] = None):
        self.ok = ok
        self.value = value
        self.error = error

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(True, value=value)

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ) -> "Result[T]":
        return cls(False, error=PipelineError(code, message, details or {}, retryable))

    @classmethod
    def from_error(cls, error: PipelineError) -> "Result[T]":
        return cls(False, error=error)

    def unwrap(self) -> T:
        if not self.ok:
            raise ResultError(self.error)
        return self.value

    def __repr__(self) -> str:
        if self.ok:
            return f"Result.success({self.value!r})"
        return f"Result.failure({self.error})"
