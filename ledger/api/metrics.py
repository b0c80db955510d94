"""Prometheus metrics for the rules engine API.

Exposes:
- Request counts and durations by endpoint
- VAT calculations by regime
- Periodization detections
- Rule evaluations by final action
- Bank matches by confidence tier
- Processed documents by resulting status
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Engine metrics
vat_calculations_total = Counter(
    "vat_calculations_total",
    "Total VAT calculations",
    ["regime"],  # domestic, eu_service, eu_goods, construction
)

periodization_detections_total = Counter(
    "periodization_detections_total",
    "Total periodization detections",
    ["result"],  # periodize, none
)

rule_evaluations_total = Counter(
    "rule_evaluations_total",
    "Total approval rule evaluations",
    ["final_action"],
)

bank_matches_total = Counter(
    "bank_matches_total",
    "Total bank matching attempts",
    ["confidence"],
)

documents_processed_total = Counter(
    "documents_processed_total",
    "Total documents run through the processing pipeline",
    ["status"],
)

document_processing_duration_seconds = Histogram(
    "document_processing_duration_seconds",
    "Document processing pipeline duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
