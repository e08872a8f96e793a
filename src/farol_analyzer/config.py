"""
Configuration for the contract analyzer.
Every component takes one of the dataclasses below; load_config() builds the
full set from environment variables (a local .env file is honored).
"""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

# Initialize logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# (min_deviation, score) steps, checked against the standardized deviation
DeviationLadder = Tuple[Tuple[float, int], ...]

DEFAULT_DEVIATION_LADDER: DeviationLadder = ((1.0, 5), (1.5, 10), (2.0, 18), (2.5, 25))
DEFAULT_DURATION_LADDER: DeviationLadder = ((1.0, 5), (1.5, 12), (2.0, 18), (2.5, 25))

# São Paulo
DEFAULT_MUNICIPALITY_CODE = "3550308"


@dataclass
class RegistryConfig:
    base_url: str = "https://pncp.gov.br/api/consulta/v1"
    contracts_path: str = "/contratos"
    history_base_url: str = "https://pncp.gov.br/api/pncp/v1"
    history_path: str = "/orgaos/{cnpj}/contratos/{year}/{sequence}/historico"
    rate_limit_ms: int = 1000
    max_retries: int = 3
    page_size: int = 500
    timeout_ms: int = 30000
    rate_limit_wait_seconds: float = 60.0
    max_rate_limit_waits: int = 10
    municipality_code: Optional[str] = DEFAULT_MUNICIPALITY_CODE
    fetch_amendments: bool = False


@dataclass
class AIConfig:
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    max_tokens: int = 2048
    temperature: float = 0.7
    timeout_ms: int = 60000
    retry_attempts: int = 3
    retry_delay_ms: int = 1000


@dataclass
class ClassificationConfig:
    batch_size: int = 50
    use_ai_fallback: bool = True
    max_text_length: int = 3000
    ai_temperature: float = 0.1
    ai_max_tokens: int = 200
    show_progress: bool = True


@dataclass
class AnomalyConfig:
    batch_size: int = 50
    min_contracts_for_stats: int = 5
    stddev_threshold: float = 2.0
    concentration_threshold: float = 0.30
    amendment_value_ratio_threshold: float = 0.5
    duration_stddev_threshold: float = 1.5
    value_ladder: DeviationLadder = DEFAULT_DEVIATION_LADDER
    amendment_ladder: DeviationLadder = DEFAULT_DEVIATION_LADDER
    duration_ladder: DeviationLadder = DEFAULT_DURATION_LADDER
    workers: int = 4
    show_progress: bool = True


@dataclass
class AutoUpdateConfig:
    schedule_hour: int = 3
    schedule_minute: int = 0
    lookback_days: int = 2
    max_retries: int = 3
    retry_delay_seconds: float = 60.0
    alerts_enabled: bool = True
    alert_webhook_url: Optional[str] = None


@dataclass
class AppConfig:
    db_path: str = "data/farol.db"
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    anomaly: AnomalyConfig = field(default_factory=AnomalyConfig)
    auto_update: AutoUpdateConfig = field(default_factory=AutoUpdateConfig)


def _get_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")
    if value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {value}")
    return value


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _get_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


def _get_str(env: Mapping[str, str], name: str, default: Optional[str]) -> Optional[str]:
    raw = env.get(name)
    if raw is None:
        return default
    # .env values are often quoted
    raw = raw.strip().strip('"').strip("'")
    return raw or default


def parse_schedule_time(value: str) -> Tuple[int, int]:
    """
    Parse a daily schedule given as "HH:MM".

    Args:
        value: Time of day, 24h clock

    Returns:
        Tuple of (hour, minute)
    """
    match = re.match(r"^(\d{1,2}):(\d{2})$", value.strip())
    if not match:
        raise ValueError(f"Schedule must be HH:MM, got {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ValueError(f"Schedule out of range: {value!r}")
    return hour, minute


def load_config(env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Build the application configuration from environment variables.

    Args:
        env: Mapping to read instead of os.environ (the .env file is only
            loaded when reading the real environment)

    Returns:
        Populated AppConfig

    Raises:
        ValueError: If any variable holds an invalid value
    """
    if env is None:
        load_dotenv()
        env = os.environ

    registry = RegistryConfig(
        base_url=_get_str(env, "FAROL_REGISTRY_URL", RegistryConfig.base_url),
        rate_limit_ms=_get_int(env, "FAROL_RATE_LIMIT_MS", RegistryConfig.rate_limit_ms),
        max_retries=_get_int(env, "FAROL_MAX_RETRIES", RegistryConfig.max_retries),
        page_size=_get_int(env, "FAROL_PAGE_SIZE", RegistryConfig.page_size, minimum=1),
        timeout_ms=_get_int(env, "FAROL_TIMEOUT_MS", RegistryConfig.timeout_ms, minimum=1),
        municipality_code=_get_str(env, "FAROL_MUNICIPALITY_CODE", DEFAULT_MUNICIPALITY_CODE),
        fetch_amendments=_get_bool(env, "FAROL_FETCH_AMENDMENTS", RegistryConfig.fetch_amendments),
    )

    provider = (_get_str(env, "FAROL_AI_PROVIDER", AIConfig.provider) or "").lower()
    if provider not in ("openai", "anthropic", "ollama"):
        raise ValueError(f"FAROL_AI_PROVIDER must be openai, anthropic or ollama, got {provider!r}")
    api_key_vars: Dict[str, str] = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
    }
    api_key = None
    if provider in api_key_vars:
        api_key = _get_str(env, api_key_vars[provider], None)
    ai = AIConfig(
        provider=provider,
        model=_get_str(env, "FAROL_AI_MODEL", AIConfig.model),
        api_key=api_key,
        base_url=_get_str(env, "FAROL_AI_BASE_URL", None),
        timeout_ms=_get_int(env, "FAROL_AI_TIMEOUT_MS", AIConfig.timeout_ms, minimum=1),
        retry_attempts=_get_int(env, "FAROL_AI_RETRY_ATTEMPTS", AIConfig.retry_attempts, minimum=1),
    )

    classification = ClassificationConfig(
        batch_size=_get_int(env, "FAROL_CLASSIFICATION_BATCH", ClassificationConfig.batch_size, minimum=1),
        use_ai_fallback=_get_bool(env, "FAROL_AI_FALLBACK", ClassificationConfig.use_ai_fallback),
    )

    anomaly = AnomalyConfig(
        batch_size=_get_int(env, "FAROL_ANOMALY_BATCH", AnomalyConfig.batch_size, minimum=1),
        min_contracts_for_stats=_get_int(env, "FAROL_MIN_POPULATION", AnomalyConfig.min_contracts_for_stats, minimum=2),
        stddev_threshold=_get_float(env, "FAROL_STDDEV_THRESHOLD", AnomalyConfig.stddev_threshold),
        concentration_threshold=_get_float(env, "FAROL_CONCENTRATION_THRESHOLD", AnomalyConfig.concentration_threshold),
        workers=_get_int(env, "FAROL_WORKERS", AnomalyConfig.workers, minimum=1),
    )
    if not 0 < anomaly.concentration_threshold < 1:
        raise ValueError("FAROL_CONCENTRATION_THRESHOLD must be between 0 and 1")

    auto_update = AutoUpdateConfig(
        lookback_days=_get_int(env, "FAROL_LOOKBACK_DAYS", AutoUpdateConfig.lookback_days, minimum=1),
        max_retries=_get_int(env, "FAROL_JOB_RETRIES", AutoUpdateConfig.max_retries),
        retry_delay_seconds=_get_float(env, "FAROL_JOB_RETRY_DELAY", AutoUpdateConfig.retry_delay_seconds),
        alerts_enabled=_get_bool(env, "FAROL_ALERTS", AutoUpdateConfig.alerts_enabled),
        alert_webhook_url=_get_str(env, "FAROL_ALERT_WEBHOOK", None),
    )
    schedule = _get_str(env, "FAROL_SCHEDULE", None)
    if schedule:
        auto_update.schedule_hour, auto_update.schedule_minute = parse_schedule_time(schedule)

    config = AppConfig(
        db_path=_get_str(env, "FAROL_DB_PATH", AppConfig.db_path),
        registry=registry,
        ai=ai,
        classification=classification,
        anomaly=anomaly,
        auto_update=auto_update,
    )
    logger.debug(f"Loaded configuration: provider={ai.provider}, db={config.db_path}")
    return config
