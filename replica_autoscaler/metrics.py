"""
Prometheus metrics collection for the autoscaler.
"""

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from datetime import datetime, timezone
from typing import Optional

from replica_autoscaler.errors import MetricsUnavailableError
from replica_autoscaler.models import MetricsSnapshot, ServiceIdentity

logger = logging.getLogger()

CPU_QUERY = 'avg(rate(container_cpu_usage_seconds_total{{name=~"{service}.*"}}[5m])) * 100'
MEMORY_QUERY = (
    'avg(container_memory_usage_bytes{{name=~"{service}.*"}} '
    '/ container_spec_memory_limit_bytes{{name=~"{service}.*"}}) * 100'
)
REQUEST_RATE_QUERY = 'sum(rate(http_requests_total{{service="{service}"}}[5m])) * 60'


class PrometheusMetrics:
    """Fetches per-service load metrics from Prometheus."""

    def __init__(self, prometheus_url: str, timeout: float = 10.0, clock=None):
        self.base_url = prometheus_url.rstrip("/")
        self.query_url = f"{self.base_url}/api/v1/query"
        self.timeout = timeout
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _query(self, promql: str) -> dict:
        """Execute a PromQL query."""
        url = f"{self.query_url}?query={urllib.parse.quote(promql)}"
        req = urllib.request.Request(url, method="GET")
        req.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return json.loads(response.read().decode("utf-8"))
        except urllib.error.URLError as e:
            logger.error(f"Failed to query Prometheus: {e}")
            raise MetricsUnavailableError(f"Prometheus unreachable: {e}") from e
        except ValueError as e:
            logger.error(f"Prometheus returned invalid JSON: {e}")
            raise MetricsUnavailableError(f"Invalid Prometheus response: {e}") from e

    def _scalar(self, promql: str) -> Optional[float]:
        """
        First sample value of an instant query, or None when the query
        matched nothing. A failed query raises.
        """
        result = self._query(promql)
        if result.get("status") != "success":
            raise MetricsUnavailableError(f"Prometheus query failed: {result.get('error', 'unknown error')}")
        results = result.get("data", {}).get("result", [])
        if not results:
            return None
        try:
            return round(float(results[0].get("value", [0, None])[1]), 2)
        except (TypeError, ValueError, IndexError):
            return None

    def get_cpu_usage(self, service: ServiceIdentity) -> Optional[float]:
        return self._scalar(CPU_QUERY.format(service=service))

    def get_memory_usage(self, service: ServiceIdentity) -> Optional[float]:
        return self._scalar(MEMORY_QUERY.format(service=service))

    def get_request_rate(self, service: ServiceIdentity) -> Optional[float]:
        """Requests per minute over the last five minutes."""
        return self._scalar(REQUEST_RATE_QUERY.format(service=service))

    def fetch(self, service: ServiceIdentity) -> MetricsSnapshot:
        snapshot = MetricsSnapshot(
            service=service,
            cpu_percent=self.get_cpu_usage(service),
            memory_percent=self.get_memory_usage(service),
            request_rate_per_minute=self.get_request_rate(service),
            observed_at=self.clock(),
        )
        logger.debug(
            f"Prometheus metrics for {service} - CPU: {snapshot.cpu_percent}%, Memory: {snapshot.memory_percent}%, "
            f"Requests: {snapshot.request_rate_per_minute} req/min"
        )
        return snapshot

