"""Prometheus metrics for monitoring."""
from prometheus_client import Counter, Histogram, Gauge, Info


# Request metrics
requests_total = Counter(
    "chatproxy_requests_total",
    "Total number of proxied chat requests",
    ["method", "status"]
)

requests_duration = Histogram(
    "chatproxy_request_duration_seconds",
    "Request duration in seconds",
    ["method"]
)

# Quota metrics
quota_rejections_total = Counter(
    "chatproxy_quota_rejections_total",
    "Total number of requests rejected by the free tier quota",
    ["window"]
)

quota_hits_total = Counter(
    "chatproxy_quota_hits_total",
    "Total accepted requests charged to a fingerprint"
)

quota_releases_total = Counter(
    "chatproxy_quota_releases_total",
    "Total strict-mode reservations rolled back"
)

# Ledger metrics
ledger_sweeps_total = Counter(
    "chatproxy_ledger_sweeps_total",
    "Total expiry sweeps run"
)

ledger_records_expired_total = Counter(
    "chatproxy_ledger_records_expired_total",
    "Total usage records removed by sweeps"
)

redis_operations_total = Counter(
    "chatproxy_redis_operations_total",
    "Total Redis operations",
    ["operation", "status"]
)

redis_operation_duration = Histogram(
    "chatproxy_redis_operation_duration_seconds",
    "Redis operation duration",
    ["operation"]
)

# Upstream metrics
upstream_requests_total = Counter(
    "chatproxy_upstream_requests_total",
    "Total upstream completion requests",
    ["model", "status"]
)

upstream_request_duration = Histogram(
    "chatproxy_upstream_request_duration_seconds",
    "Upstream completion request duration",
    ["model"]
)

upstream_errors_total = Counter(
    "chatproxy_upstream_errors_total",
    "Total upstream errors",
    ["error_type"]
)

# Circuit breaker metrics
circuit_breaker_state = Gauge(
    "chatproxy_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["service"]
)

circuit_breaker_failures_total = Counter(
    "chatproxy_circuit_breaker_failures_total",
    "Total circuit breaker failures",
    ["service"]
)

# Application info
app_info = Info("chatproxy_app", "Application information")


def record_request(method: str, status: int, duration: float):
    """Record request metrics."""
    requests_total.labels(method=method, status=status).inc()
    requests_duration.labels(method=method).observe(duration)


def record_quota_rejection(window: str):
    quota_rejections_total.labels(window=window).inc()


def record_quota_hit():
    quota_hits_total.inc()


def record_quota_release():
    quota_releases_total.inc()


def record_sweep(removed: int):
    """Record an expiry sweep and how many records it removed."""
    ledger_sweeps_total.inc()
    if removed:
        ledger_records_expired_total.inc(removed)


def record_redis_operation(operation: str, status: str, duration: float):
    """Record Redis operation."""
    redis_operations_total.labels(operation=operation, status=status).inc()
    redis_operation_duration.labels(operation=operation).observe(duration)


def record_upstream_request(model: str, status: str, duration: float):
    """Record upstream completion request."""
    upstream_requests_total.labels(model=model, status=status).inc()
    upstream_request_duration.labels(model=model).observe(duration)


def record_upstream_error(error_type: str):
    upstream_errors_total.labels(error_type=error_type).inc()


def record_circuit_breaker_state(service: str, state: str):
    """Record circuit breaker state."""
    state_map = {"closed": 0, "half_open": 1, "open": 2}
    circuit_breaker_state.labels(service=service).set(state_map.get(state, 0))


def record_circuit_breaker_failure(service: str):
    """Record circuit breaker failure."""
    circuit_breaker_failures_total.labels(service=service).inc()


def set_app_info(version: str, python_version: str, backend: str):
    """Set application information."""
    app_info.info({
        "version": version,
        "python_version": python_version,
        "backend": backend
    })
