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
            self.reservations = None
            self.holds = None
            self.holds_expired = None
            self.anomalies = None
            self.inventory_failures = None
            self.orders = None
            self.notifications = None
            self.stripe_webhook_events = None
            self.webhook_errors = None
            self.auth_failures = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            self.circuit_state = None
            return

        self.reservations = Counter(
            "reservations_total",
            "Reservation lifecycle transitions.",
            ["action"],
            registry=self.registry,
        )
        self.holds = Counter(
            "holds_total",
            "Hold requests by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.holds_expired = Counter(
            "holds_expired_total",
            "Holds expired by the janitor or by gateway expiry events.",
            ["source"],
            registry=self.registry,
        )
        self.anomalies = Counter(
            "reconciliation_anomalies_total",
            "Payment reconciliation anomalies requiring operator attention.",
            ["kind"],
            registry=self.registry,
        )
        self.inventory_failures = Counter(
            "inventory_decrement_failures_total",
            "Order lines whose guarded inventory decrement affected no rows.",
            registry=self.registry,
        )
        self.orders = Counter(
            "orders_total",
            "Storefront order transitions.",
            ["action"],
            registry=self.registry,
        )
        self.notifications = Counter(
            "notifications_total",
            "Notification delivery outcomes by kind.",
            ["kind", "status"],
            registry=self.registry,
        )
        self.stripe_webhook_events = Counter(
            "stripe_webhook_events_total",
            "Stripe webhook outcomes by result.",
            ["outcome"],
            registry=self.registry,
        )
        self.webhook_errors = Counter(
            "webhook_errors_total",
            "Webhook errors by type (low cardinality).",
            ["type"],
            registry=self.registry,
        )
        self.auth_failures = Counter(
            "auth_failures_total",
            "Rejected admin, cron and metrics credentials.",
            ["scope", "reason"],
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

    def record_reservation(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.reservations is None or count <= 0:
            return
        self.reservations.labels(action=action).inc(count)

    def record_hold(self, outcome: str) -> None:
        if not self.enabled or self.holds is None:
            return
        self.holds.labels(outcome=outcome or "unknown").inc()

    def record_holds_expired(self, source: str, count: int = 1) -> None:
        if not self.enabled or self.holds_expired is None or count <= 0:
            return
        self.holds_expired.labels(source=source).inc(count)

    def record_anomaly(self, kind: str) -> None:
        if not self.enabled or self.anomalies is None:
            return
        self.anomalies.labels(kind=kind or "unknown").inc()

    def record_inventory_failure(self, count: int = 1) -> None:
        if not self.enabled or self.inventory_failures is None or count <= 0:
            return
        self.inventory_failures.inc(count)

    def record_order(self, action: str) -> None:
        if not self.enabled or self.orders is None:
            return
        self.orders.labels(action=action).inc()

    def record_notification(self, kind: str, status: str) -> None:
        if not self.enabled or self.notifications is None:
            return
        self.notifications.labels(kind=kind or "unknown", status=status).inc()

    def record_stripe_webhook(self, outcome: str) -> None:
        if not self.enabled or self.stripe_webhook_events is None:
            return
        self.stripe_webhook_events.labels(outcome=outcome or "unknown").inc()

    def record_webhook_error(self, error_type: str) -> None:
        if not self.enabled or self.webhook_errors is None:
            return
        self.webhook_errors.labels(type=error_type or "unknown").inc()

    def record_auth_failure(self, scope: str, reason: str) -> None:
        if not self.enabled or self.auth_failures is None:
            return
        self.auth_failures.labels(scope=scope, reason=reason).inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            max(0.0, float(duration_seconds))
        )

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None:
            return
        self.job_heartbeat.labels(job=job).set(timestamp if timestamp is not None else time.time())

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        self.job_last_success.labels(job=job).set(timestamp if timestamp is not None else time.time())

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
