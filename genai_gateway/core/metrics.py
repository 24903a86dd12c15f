"""Prometheus metrics for the application.

These are process-lifetime counters on the default registry. The rolling
window statistics exported by MetricsLogger live in their own registry.
"""

from prometheus_client import Counter, Histogram, Info

# --- Metrics ---

APP_INFO = Info("genai_gateway", "GenAI gateway application info")
APP_INFO.info({"version": "0.1.0", "name": "genai_gateway"})

API_CALLS = Counter(
    "genai_gateway_calls_total",
    "Total intercepted API calls",
    ["service", "method", "status"],
)

API_CALL_DURATION = Histogram(
    "genai_gateway_call_duration_seconds",
    "Intercepted API call duration in seconds",
    ["service", "method"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60],
)

API_TOKENS = Counter(
    "genai_gateway_tokens_total",
    "Total tokens reported by intercepted API calls",
    ["service", "method"],
)

RETRIES = Counter(
    "genai_gateway_retries_total",
    "Retries scheduled by the retry engine",
    ["service", "method"],
)

KEY_USAGE = Counter(
    "genai_gateway_key_usage_total",
    "Credential usage recorded by the key rotation pool",
    ["outcome"],
)
