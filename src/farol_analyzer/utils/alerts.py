"""
Alerts emitted at the end of every update run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import requests

from farol_analyzer.utils.result import AutoUpdateErrorCode, Result

logger = logging.getLogger(__name__)

ALERT_LINE = "=" * 50


class AlertType:
    JOB_SUCCESS = "job_success"
    PARTIAL_FAILURE = "partial_failure"
    JOB_FAILURE = "job_failure"


@dataclass
class AlertPayload:
    type: str
    message: str
    metrics: Dict[str, Any] = field(default_factory=dict)
    last_error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "message": self.message,
            "metrics": self.metrics,
            "lastError": self.last_error,
            "timestamp": self.timestamp.isoformat(),
        }


class LoggingAlertSink:
    """Writes the alert as a banner through the module logger."""

    def send(self, payload: AlertPayload) -> Result[None]:
        log = logger.info if payload.type == AlertType.JOB_SUCCESS else logger.warning
        metrics = payload.metrics
        log(ALERT_LINE)
        log(f"[ALERT] {payload.type.upper()}")
        log(ALERT_LINE)
        log(f"Timestamp: {payload.timestamp.isoformat()}")
        log(f"Message: {payload.message}")
        log("Metrics:")
        log(f"  - New contracts: {metrics.get('newContracts', 0)}")
        log(f"  - Updated contracts: {metrics.get('updatedContracts', 0)}")
        log(f"  - Scores recalculated: {metrics.get('scoresRecalculated', 0)}")
        log(f"  - Errors: {metrics.get('errors', 0)}")
        if payload.last_error:
            log(f"  - Last error: {payload.last_error}")
        log(ALERT_LINE)
        return Result.success()


class WebhookAlertSink:
    """
    Posts the alert as JSON to a webhook (Slack-compatible "text" field included).

    Args:
        url: Webhook URL
        session: requests session, one is created when omitted
        timeout: Request timeout in seconds
    """

    def __init__(self, url: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, payload: AlertPayload) -> Result[None]:
        body = payload.to_dict()
        body["text"] = f"[{payload.type.upper()}] {payload.message}"
        if payload.last_error:
            body["text"] += f"\nLast error: {payload.last_error}"
        try:
            response = self.session.post(self.url, json=body, timeout=self.timeout)
        except requests.RequestException as e:
            return Result.failure(AutoUpdateErrorCode.ALERT_ERROR, f"Webhook request failed: {e}")
        if response.status_code >= 400:
            return Result.failure(
                AutoUpdateErrorCode.ALERT_ERROR,
                f"Webhook returned HTTP {response.status_code}",
                details={"status": response.status_code},
            )
        return Result.success()


class CallbackAlertSink:
    """Hands the payload to a callable; used by embedding code and tests."""

    def __init__(self, callback: Callable[[AlertPayload], None]):
        self.callback = callback

    def send(self, payload: AlertPayload) -> Result[None]:
        self.callback(payload)
        return Result.success()


class AlertDispatcher:
    """
    Fans an alert out to every sink. A failing sink is logged and does not
    stop the others.
    """

    def __init__(self, sinks: Optional[List[Any]] = None, enabled: bool = True):
        self.sinks = sinks if sinks is not None else [LoggingAlertSink()]
        self.enabled = enabled

    def send(self, payload: AlertPayload) -> List[Result[None]]:
        if not self.enabled:
            return []
        results = []
        for sink in self.sinks:
            try:
                result = sink.send(payload)
            except Exception as e:
                result = Result.failure(AutoUpdateErrorCode.ALERT_ERROR, f"Alert sink failed: {e}")
            if not result.ok:
                logger.error(f"Could not deliver {payload.type} alert: {result.error.message}")
            results.append(result)
        return results
