"""
Metrics
=======
Prometheus counters for ingestion health.
"""

from prometheus_client import Counter

EVENTS_INGESTED = Counter(
    "codex_meter_events_ingested_total",
    "Usage events appended to the store",
    ["collector"],
)
EVENTS_DUPLICATE = Counter(
    "codex_meter_events_duplicate_total",
    "Usage events ignored because their source id was already stored",
    ["collector"],
)
EVENTS_DROPPED = Counter(
    "codex_meter_events_dropped_total",
    "Channel items dropped during shutdown",
    ["reason"],
)
RECORDS_MALFORMED = Counter(
    "codex_meter_records_malformed_total",
    "Log lines that could not be parsed",
)
RESPONSES_UNEXTRACTED = Counter(
    "codex_meter_responses_unextracted_total",
    "Proxied responses forwarded without a usage event",
    ["reason"],
)
UNPRICED_EVENTS = Counter(
    "codex_meter_unpriced_events_total",
    "Events whose model had no applicable price",
)
FLUSH_FAILURES = Counter(
    "codex_meter_flush_failures_total",
    "Daily aggregate writes that failed after retries",
)
EVENTS_REJECTED = Counter(
    "codex_meter_events_rejected_total",
    "Usage events skipped by the Aggregator because processing them failed",
)
