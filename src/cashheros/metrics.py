"""Prometheus metrics for the CashHeros edge service."""

from prometheus_client import Counter, Histogram, Info

from cashheros import __version__


class EdgeMetrics:
    """Metrics collection for the edge pipeline."""

    def __init__(self) -> None:
        self.info = Info("cashheros_edge", "CashHeros edge pipeline")
        self.info.info({"version": __version__, "rate_limit": "fixed_window"})

        self.http_requests_total = Counter(
            "cashheros_http_requests_total",
            "Total HTTP requests",
            ["method", "route", "status"],
        )

        self.http_request_duration = Histogram(
            "cashheros_http_request_duration_seconds",
            "Duration of HTTP requests",
            ["method", "route"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
        )

        self.rate_limit_decisions_total = Counter(
            "cashheros_rate_limit_decisions_total",
            "Rate limit decisions per rule",
            ["rule", "result"],
        )

        self.login_lockouts_total = Counter(
            "cashheros_login_lockouts_total",
            "Login keys moved into lockout",
        )

        self.csrf_rejections_total = Counter(
            "cashheros_csrf_rejections_total",
            "Mutating requests rejected by CSRF validation",
            ["reason"],
        )

        self.auth_failures_total = Counter(
            "cashheros_auth_failures_total",
            "Rejected bearer tokens and provider verifications",
            ["reason"],
        )

        self.api_key_rejections_total = Counter(
            "cashheros_api_key_rejections_total",
            "Requests refused at API-key guarded routes",
            ["reason"],
        )

        self.payload_rejections_total = Counter(
            "cashheros_payload_rejections_total",
            "Bodies or queries refused for operator keys",
            ["location"],
        )

        self.errors_total = Counter(
            "cashheros_errors_total",
            "Error envelopes emitted",
            ["kind"],
        )

        self.redis_operations_total = Counter(
            "cashheros_redis_operations_total",
            "Total Redis operations",
            ["operation", "status"],
        )


# Singleton instance
metrics = EdgeMetrics()
