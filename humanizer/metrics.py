from prometheus_client import Counter, Histogram
# Prometheus metrics definitions

transform_requests_total = Counter(
    "transform_requests_total", "Total text transformation requests"
)

# LLM round trips dominate; buckets sized for multi-second responses
_transform_latency_buckets = (
    0.5,
    1.0,
    2.0,
    4.0,
    8.0,
    16.0,
    32.0,
)

transform_latency_seconds = Histogram(
    "transform_latency_seconds",
    "Transformation latency including LLM retries",
    buckets=_transform_latency_buckets,
)

# Pre-check denials, labelled per-request-limit / insufficient-balance
quota_reject_total = Counter(
    "quota_reject_total", "Number of quota rejected requests", ["reason"]
)

# Conditional usage update matched no row (lost race or limit reached)
quota_commit_rejected_total = Counter(
    "quota_commit_rejected_total", "Usage commits rejected by the conditional write"
)

quota_commit_failed_total = Counter(
    "quota_commit_failed_total", "Usage commits that raised a datastore error"
)

llm_overloaded_retry_total = Counter(
    "llm_overloaded_retry_total", "LLM calls retried after an overloaded response"
)

quality_gate_reject_total = Counter(
    "quality_gate_reject_total", "Transformations rejected by the quality gate"
)

rate_limit_reject_total = Counter(
    "rate_limit_reject_total", "Requests rejected by the rate limiter"
)

# Webhook traffic
webhook_events_total = Counter(
    "webhook_events_total", "Verified webhook events", ["source", "type"]
)

webhook_forbidden_total = Counter(
    "webhook_forbidden_total", "Webhook requests with an invalid signature", ["source"]
)

webhook_handler_errors_total = Counter(
    "webhook_handler_errors_total", "Webhook events whose handler raised", ["source"]
)

__all__ = [
    "transform_requests_total",
    "transform_latency_seconds",
    "quota_reject_total",
    "quota_commit_rejected_total",
    "quota_commit_failed_total",
    "llm_overloaded_retry_total",
    "quality_gate_reject_total",
    "rate_limit_reject_total",
    "webhook_events_total",
    "webhook_forbidden_total",
    "webhook_handler_errors_total",
]
