"""Prometheus metrics on an isolated registry."""

from prometheus_client import CollectorRegistry, Counter, Histogram

CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total failed requests", registry=CUSTOM_REGISTRY)
CONVERSATIONS = Counter(
    "conversations_total", "Conversations created by model", ["model"], registry=CUSTOM_REGISTRY
)
MESSAGES = Counter(
    "messages_total", "Turns started by model", ["model"], registry=CUSTOM_REGISTRY
)
GENERATION_ERRORS = Counter(
    "generation_errors_total", "Generation passes that failed", ["model"], registry=CUSTOM_REGISTRY
)
LATENCY = Histogram(
    "generation_latency_seconds",
    "Time from prompt to final answer",
    ["model"],
    registry=CUSTOM_REGISTRY,
)
