"""Prometheus metrics for retries, the rate-limited queue and degradation."""

from prometheus_client import Counter, Gauge, Histogram

RETRY_ATTEMPTS_TOTAL = Counter(
    'resilience_retry_attempts_total',
    'Failed attempts that were followed by a retry',
    ['service', 'code']
)

OPERATIONS_TOTAL = Counter(
    'resilience_operations_total',
    'Operations run through the retry executor',
    ['service', 'outcome']
)

QUEUE_DISPATCH_TOTAL = Counter(
    'resilience_queue_dispatch_total',
    'Requests leaving the rate-limited queue',
    ['queue', 'outcome']
)

QUEUE_WAIT_SECONDS = Histogram(
    'resilience_queue_wait_seconds',
    'Time between enqueue and dispatch',
    ['queue']
)

QUEUE_LENGTH = Gauge(
    'resilience_queue_length',
    'Requests waiting in the rate-limited queue',
    ['queue']
)

DEGRADATION_EVENTS_TOTAL = Counter(
    'resilience_degradation_events_total',
    'Primary failures absorbed by a fallback',
    ['resource', 'code']
)
