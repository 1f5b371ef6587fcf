from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "llm_proxy_server_requests_total",
    "Total HTTP requests handled by the proxy",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "llm_proxy_server_request_latency_seconds",
    "HTTP request latency (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120],
    labelnames=["path"],
)

server_errors_total = Counter(
    "llm_proxy_server_errors_total",
    "Total errors returned by the proxy",
    labelnames=["type"],
)

provider_attempts_total = Counter(
    "llm_proxy_provider_attempts_total",
    "Single provider calls by outcome (success or error kind)",
    labelnames=["provider", "outcome"],
)

provider_latency_seconds = Histogram(
    "llm_proxy_provider_latency_seconds",
    "Latency of single provider calls",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["provider"],
)

router_retries_total = Counter(
    "llm_proxy_router_retries_total",
    "Retries scheduled by the router",
    labelnames=["provider", "kind"],
)

router_fallbacks_total = Counter(
    "llm_proxy_router_fallbacks_total",
    "Requests moved to the fallback provider",
    labelnames=["from_provider", "to_provider"],
)

usage_tokens_total = Counter(
    "llm_proxy_usage_tokens_total",
    "Metered tokens",
    labelnames=["provider", "model", "direction"],
)

usage_cost_total = Counter(
    "llm_proxy_usage_cost_dollars_total",
    "Metered cost in dollars",
    labelnames=["provider", "model"],
)

usage_records_total = Counter(
    "llm_proxy_usage_records_total",
    "Usage records produced",
    labelnames=["provider", "success"],
)

metering_persist_failures_total = Counter(
    "llm_proxy_metering_persist_failures_total",
    "Usage records that could not be written to the sink",
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
