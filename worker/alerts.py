"""
Operator alerts for worker events.

Provides webhook notifications for:
- Jobs that ended in the failed state
- Jobs whose artifacts could not be published anywhere
- Jobs popped from the queue whose metadata had expired
- Worker pool startup and shutdown

Includes rate limiting per alert type to prevent alert flooding.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Set

import httpx

from api.errors import truncate_error
from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL

logger = logging.getLogger(__name__)

# Strong references for in-flight fire-and-forget alerts
_background_tasks: Set[asyncio.Task] = set()


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    JOB_FAILED = "job_failed"
    PUBLISH_FALLBACK_EXHAUSTED = "publish_fallback_exhausted"
    JOB_METADATA_MISSING = "job_metadata_missing"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Tracks counters for alerting and the /status endpoint."""

    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_cancelled: int = 0
    publish_failures: int = 0
    missing_metadata: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = 300) -> bool:
        """Check if enough time has passed since the last alert of this type."""
        last_time = self.last_alert_time.get(alert_type)
        if last_time is None:
            return True
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert metrics to a dictionary for reporting."""
        return {
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "jobs_cancelled": self.jobs_cancelled,
            "publish_failures": self.publish_failures,
            "missing_metadata": self.missing_metadata,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
        }


# Global metrics instance
_metrics: Optional[AlertMetrics] = None


def get_metrics() -> AlertMetrics:
    """Get or create the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Schedule an alert coroutine as a background task.

    Alert failures never reach the caller; they are logged at debug level.
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        task = asyncio.create_task(_safe_send())
    except RuntimeError:
        logger.debug("Cannot send alert: no running event loop")
        coro.close()
        return
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
) -> bool:
    """
    Send an alert to the configured webhook URL.

    Args:
        alert_type: Type of alert being sent
        details: Additional details about the alert
        force: If True, bypass rate limiting

    Returns:
        True if alert was sent successfully, False otherwise
    """
    if not ALERT_WEBHOOK_URL:
        return False

    metrics = get_metrics()

    if not force and not metrics.can_send_alert(alert_type.value, ALERT_RATE_LIMIT_SECONDS):
        metrics.alerts_rate_limited += 1
        logger.debug(f"Alert {alert_type.value} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(ALERT_WEBHOOK_URL, json=payload)
            response.raise_for_status()

        metrics.record_alert_sent(alert_type.value)
        logger.info(f"Alert sent: {alert_type.value}")
        return True

    except httpx.TimeoutException:
        metrics.alerts_failed += 1
        logger.warning(f"Alert webhook timed out after {ALERT_WEBHOOK_TIMEOUT}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.alerts_failed += 1
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except httpx.HTTPError as e:
        metrics.alerts_failed += 1
        logger.warning(f"Failed to send alert webhook: {e}")
        return False


async def alert_job_failed(job_id: str, owner_id: str, error: Optional[str]):
    get_metrics().jobs_failed += 1
    await send_webhook_alert(
        AlertType.JOB_FAILED,
        {"job_id": job_id, "owner_id": owner_id, "error": truncate_error(error)},
    )


async def alert_publish_fallback_exhausted(job_id: str, error: str):
    """Both blob publishers failed; the job finished with local paths only."""
    get_metrics().publish_failures += 1
    await send_webhook_alert(
        AlertType.PUBLISH_FALLBACK_EXHAUSTED,
        {"job_id": job_id, "error": truncate_error(error)},
    )


async def alert_job_metadata_missing(job_id: str):
    get_metrics().missing_metadata += 1
    await send_webhook_alert(AlertType.JOB_METADATA_MISSING, {"job_id": job_id})


async def alert_worker_startup(worker_name: str, concurrency: int):
    await send_webhook_alert(
        AlertType.WORKER_STARTUP,
        {"worker": worker_name, "concurrency": concurrency},
        force=True,
    )


async def alert_worker_shutdown(worker_name: str, active_jobs: int = 0):
    """
    Send alert when the worker pool shuts down.

    Args:
        worker_name: Name of this worker process
        active_jobs: Jobs still running when shutdown began
    """
    await send_webhook_alert(
        AlertType.WORKER_SHUTDOWN,
        {
            "worker": worker_name,
            "active_jobs": active_jobs,
            "final_metrics": get_metrics().to_dict(),
        },
        force=True,
    )
