import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.automation_executions = None
            self.automation_execution_latency = None
            self.automation_evaluation_errors = None
            self.automation_retries = None
            self.automation_retry_depth = None
            self.messaging_outcomes = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            self.circuit_state = None
            return

        self.automation_executions = Counter(
            "automation_executions_total",
            "Automation executions by action type and outcome.",
            ["action", "outcome"],
            registry=self.registry,
        )
        self.automation_execution_latency = Histogram(
            "automation_execution_seconds",
            "Wall-clock duration of a single automation action.",
            ["action"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.automation_evaluation_errors = Counter(
            "automation_evaluation_errors_total",
            "Rules skipped because their trigger check raised.",
            ["trigger"],
            registry=self.registry,
        )
        self.automation_retries = Counter(
            "automation_retries_total",
            "Retry scheduler outcomes.",
            ["outcome"],
            registry=self.registry,
        )
        self.automation_retry_depth = Gauge(
            "automation_retry_queue_items",
            "Retry queue depth by status (pending/dead).",
            ["status"],
            registry=self.registry,
        )
        self.messaging_outcomes = Counter(
            "messaging_adapter_outcomes_total",
            "Messaging provider send outcomes by channel.",
            ["channel", "status"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_last_heartbeat_timestamp",
            "Unix timestamp for the latest job heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful job loop.",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_automation_execution(self, action: str, success: bool, duration_seconds: float | None = None) -> None:
        if not self.enabled or self.automation_executions is None:
            return
        outcome = "success" if success else "failure"
        self.automation_executions.labels(action=action or "unknown", outcome=outcome).inc()
        if duration_seconds is not None and self.automation_execution_latency is not None:
            self.automation_execution_latency.labels(action=action or "unknown").observe(
                max(0.0, float(duration_seconds))
            )

    def record_evaluation_error(self, trigger: str) -> None:
        if not self.enabled or self.automation_evaluation_errors is None:
            return
        self.automation_evaluation_errors.labels(trigger=trigger or "unknown").inc()

    def record_retry(self, outcome: str, count: int = 1) -> None:
        if not self.enabled or self.automation_retries is None:
            return
        if count <= 0:
            return
        self.automation_retries.labels(outcome=outcome or "unknown").inc(count)

    def set_retry_depth(self, status: str, count: int) -> None:
        if not self.enabled or self.automation_retry_depth is None:
            return
        self.automation_retry_depth.labels(status=status or "unknown").set(max(0, count))

    def record_messaging(self, channel: str, status: str) -> None:
        if not self.enabled or self.messaging_outcomes is None:
            return
        self.messaging_outcomes.labels(channel=channel or "unknown", status=status or "unknown").inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        self.job_errors.labels(job=job, reason=reason or "unknown").inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
