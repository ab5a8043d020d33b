"""Prometheus metrics shared by the resolver, ingestion worker and services.

Metrics are module level so every request and worker task reports into
the same default registry exposed at ``/metrics``.
"""

from prometheus_client import Counter, Histogram

__all__ = [
    "REDIRECTS_TOTAL",
    "RESOLVE_DURATION",
    "LINK_CACHE_LOOKUPS_TOTAL",
    "CLICK_INCREMENTS_TOTAL",
    "LINKS_CREATED_TOTAL",
    "CODE_COLLISIONS_TOTAL",
    "CLICKS_ENQUEUED_TOTAL",
    "CLICKS_DROPPED_TOTAL",
    "CLICK_EVENTS_PERSISTED_TOTAL",
    "CLICK_EVENTS_FAILED_TOTAL",
    "ENRICHMENT_FAILURES_TOTAL",
    "STORAGE_ERRORS_TOTAL",
]

# Resolution
REDIRECTS_TOTAL = Counter(
    "link_resolver_redirects_total",
    "Resolution requests by terminal outcome",
    ["status", "reason"],
)
RESOLVE_DURATION = Histogram(
    "link_resolver_resolve_duration_seconds",
    "Time taken to resolve a short code",
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25],
)
LINK_CACHE_LOOKUPS_TOTAL = Counter(
    "link_resolver_cache_lookups_total",
    "Projection cache lookups",
    ["cache_status"],
)
CLICK_INCREMENTS_TOTAL = Counter(
    "link_resolver_click_increments_total",
    "Atomic click increments by result",
    ["applied"],
)

# Link management
LINKS_CREATED_TOTAL = Counter(
    "link_resolver_links_created_total",
    "Short links created",
    ["code_source"],
)
CODE_COLLISIONS_TOTAL = Counter(
    "link_resolver_code_collisions_total",
    "Generated codes that already existed",
)

# Ingestion
CLICKS_ENQUEUED_TOTAL = Counter(
    "link_resolver_clicks_enqueued_total",
    "Click jobs pushed onto the ingestion queue",
)
CLICKS_DROPPED_TOTAL = Counter(
    "link_resolver_clicks_dropped_total",
    "Click jobs dropped because the ingestion queue was full",
)
CLICK_EVENTS_PERSISTED_TOTAL = Counter(
    "link_resolver_click_events_persisted_total",
    "Click events written to the store",
    ["enriched"],
)
CLICK_EVENTS_FAILED_TOTAL = Counter(
    "link_resolver_click_events_failed_total",
    "Click events that could not be written",
)
ENRICHMENT_FAILURES_TOTAL = Counter(
    "link_resolver_enrichment_failures_total",
    "Enrichment steps that degraded to Unknown",
    ["stage"],
)

# Storage
STORAGE_ERRORS_TOTAL = Counter(
    "link_resolver_storage_errors_total",
    "Persistence failures by operation",
    ["operation"],
)
