"""Instruments recorded while serving the site."""

from __future__ import annotations

from ..common.metrics import Counter, Gauge, Histogram, MetricsRegistry, exponential_buckets


class SiteMetrics:
    """Owns the site registry; one instance is created per application."""

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        self.registry = registry or MetricsRegistry()
        register = self.registry.register
        self.requests_total = register(
            Counter(
                "spray_requests_total",
                "Total number of requests handled by the site server",
                ["bucket_name", "path", "method", "status"],
            )
        )
        self.request_duration = register(
            Histogram(
                "spray_request_duration_seconds",
                description="Duration of requests in seconds",
                labelnames=["bucket_name", "method"],
            )
        )
        self.bytes_transferred = register(
            Counter(
                "spray_bytes_transferred_total",
                "Total number of bytes transferred",
                ["bucket_name", "path", "method", "direction"],
            )
        )
        self.active_requests = register(
            Gauge("spray_active_requests", "Number of currently active requests", ["bucket_name"])
        )
        self.cache_status = register(
            Counter(
                "spray_cache_total",
                "Cache hits, misses and bypasses from conditional requests",
                ["bucket_name", "path", "status"],
            )
        )
        self.cache_headers_set = register(
            Counter(
                "spray_cache_headers_total",
                "Responses with cache headers set",
                ["bucket_name", "content_type", "cache_policy"],
            )
        )
        self.conditional_requests = register(
            Counter(
                "spray_conditional_requests_total",
                "Conditional requests (If-None-Match, If-Modified-Since)",
                ["bucket_name", "type", "result"],
            )
        )
        self.errors_total = register(
            Counter("spray_errors_total", "Errors by type", ["bucket_name", "path", "error_type"])
        )
        self.object_size = register(
            Histogram(
                "spray_object_size_bytes",
                buckets=exponential_buckets(1024, 2, 10),
                description="Distribution of served object sizes in bytes",
                labelnames=["bucket_name"],
            )
        )
        self.storage_latency = register(
            Histogram(
                "spray_storage_operation_duration_seconds",
                description="Duration of object store operations in seconds",
                labelnames=["bucket_name", "operation"],
            )
        )
        self.storage_operations_skipped = register(
            Counter(
                "spray_storage_operations_skipped_total",
                "Object store operations skipped due to cache validation",
                ["bucket_name", "operation"],
            )
        )
        self.redirect_hits = register(
            Counter("spray_redirects_total", "Redirects served", ["bucket_name", "path", "destination"])
        )
        self.redirect_latency = register(
            Histogram(
                "spray_redirect_duration_seconds",
                description="Duration of redirect processing in seconds",
                labelnames=["bucket_name"],
            )
        )
        self.redirect_config_errors = register(
            Counter(
                "spray_redirect_config_errors_total",
                "Site configuration load errors",
                ["bucket_name", "error_type"],
            )
        )

    def render(self) -> str:
        return self.registry.render()
