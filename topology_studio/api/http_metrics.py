from __future__ import annotations

"""
Prometheus HTTP metrics for the FastAPI layer.

Labels:
- path (route template, e.g. /api/workspace/canvas/shapes/{shape_id})
- method (GET/POST/...)
- status (HTTP status code as string)
"""

from prometheus_client import Counter, Histogram

API_REQUESTS = Counter(
    "topology_studio_http_requests_total",
    "Total number of HTTP requests received by the API",
    labelnames=("path", "method", "status"),
)

API_REQUEST_DURATION = Histogram(
    "topology_studio_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=("path", "method"),
)
