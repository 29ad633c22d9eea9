# core/metrics.py

from prometheus_client import Counter, Histogram, Gauge

# ----------------------------
# Request Counters
# ----------------------------

CHAT_REQUESTS = Counter(
    "chat_requests_total",
    "Total chat requests handled",
    ["route", "status"]  # status: HTTP status code as string
)

CACHE_LOOKUPS = Counter(
    "cache_lookups_total",
    "Response cache lookups",
    ["result"]  # hit, miss
)

GEMINI_REQUESTS = Counter(
    "gemini_requests_total",
    "Total calls to the Gemini API",
    ["mode", "status"]  # mode: generate, chat, stream, models
)

# ----------------------------
# Latency Histograms
# ----------------------------

GEMINI_LATENCY = Histogram(
    "gemini_request_latency_seconds",
    "Gemini API call latency (full stream duration for mode=stream)",
    ["mode"]
)

# ----------------------------
# Stream Metrics
# ----------------------------

STREAM_REQUESTS = Counter(
    "stream_requests_total",
    "Total streaming chat requests",
    ["status"]  # started, success, error
)

# ----------------------------
# Key Pool
# ----------------------------

API_KEYS_CONFIGURED = Gauge(
    "api_keys_configured",
    "Number of Gemini API keys currently in the rotation pool"
)


def record_gemini_call(mode: str, status: str, duration_sec: float) -> None:
    """Record one upstream call with its outcome and duration."""
    GEMINI_REQUESTS.labels(mode=mode, status=status).inc()
    GEMINI_LATENCY.labels(mode=mode).observe(duration_sec)


def record_cache_lookup(hit: bool) -> None:
    CACHE_LOOKUPS.labels(result="hit" if hit else "miss").inc()
