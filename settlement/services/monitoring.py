import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime

import httpx

logger = logging.getLogger(__name__)


@dataclass
class TaskMetrics:
    completed: int = 0
    failed: int = 0
    retried: int = 0
    stalled: int = 0
    consecutive_failures: int = 0
    last_success_at: datetime | None = None
    recent_failures: deque = field(default_factory=lambda: deque(maxlen=10))

    def as_dict(self) -> dict:
        return {
            "completed": self.completed,
            "failed": self.failed,
            "retried": self.retried,
            "stalled": self.stalled,
            "consecutive_failures": self.consecutive_failures,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "recent_failures": list(self.recent_failures),
        }


class Alerter:
    def __init__(self, webhook_url: str = "", timeout_sec: int = 10, transport: httpx.BaseTransport | None = None) -> None:
        self.webhook_url = webhook_url
        self.client = httpx.Client(timeout=timeout_sec, transport=transport) if webhook_url else None
        self.sent: list[dict] = []

    def send(self, kind: str, message: str, **context) -> None:
        payload = {"kind": kind, "message": message, "context": context, "at": datetime.utcnow().isoformat()}
        self.sent.append(payload)
        del self.sent[:-50]
        logger.error("ALERT %s: %s %s", kind, message, context)
        if not self.client:
            return
        try:
            response = self.client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Alert webhook failed: %s", exc)

    def close(self) -> None:
        if self.client:
            self.client.close()


class QueueMonitor:
    """In-process job counters with threshold alerts. One instance per worker process."""

    def __init__(self, alerter: Alerter, failure_threshold: int = 5, stalled_threshold: int = 3) -> None:
        self.alerter = alerter
        self.failure_threshold = failure_threshold
        self.stalled_threshold = stalled_threshold
        self._metrics: dict[str, TaskMetrics] = {}
        self._lock = threading.Lock()

    def _task(self, task: str) -> TaskMetrics:
        if task not in self._metrics:
            self._metrics[task] = TaskMetrics()
        return self._metrics[task]

    def record_completed(self, task: str, job_key: str) -> None:
        with self._lock:
            metrics = self._task(task)
            metrics.completed += 1
            metrics.consecutive_failures = 0
            metrics.last_success_at = datetime.utcnow()

    def record_retry(self, task: str, job_key: str, error: str) -> None:
        with self._lock:
            self._task(task).retried += 1

    def record_failed(self, task: str, job_key: str, error: str) -> None:
        with self._lock:
            metrics = self._task(task)
            metrics.failed += 1
            metrics.consecutive_failures += 1
            metrics.recent_failures.append(
                {"job_key": job_key, "error": error[:500], "at": datetime.utcnow().isoformat()}
            )
            streak = metrics.consecutive_failures
        self.alerter.send("job_failed", f"{task} job {job_key} failed permanently", error=error[:500])
        if streak == self.failure_threshold:
            self.alerter.send("failure_threshold", f"{task} has {streak} consecutive failures", task=task)

    def record_stalled(self, task: str, job_key: str, stalled_count: int) -> None:
        with self._lock:
            metrics = self._task(task)
            metrics.stalled += 1
            total = metrics.stalled
        logger.warning("Stalled job %s (%s); a worker died mid-job", job_key, task)
        if total % self.stalled_threshold == 0:
            self.alerter.send("stalled_jobs", f"{task} has {total} stalled jobs", task=task, job_key=job_key)

    def alert(self, kind: str, message: str, **context) -> None:
        self.alerter.send(kind, message, **context)

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            return {task: metrics.as_dict() for task, metrics in self._metrics.items()}
