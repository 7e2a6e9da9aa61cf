"""
Prometheus instant-query client for per-claim disk usage and per-pod network usage.
One synchronous GET per query, no caching, no retries.
"""
import logging
import math
from typing import Any, Dict, List, Optional

import requests

from config import PROMETHEUS_TIMEOUT_SECONDS, QueryTemplates
from models import MetricSample, NetworkSample


class PrometheusError(Exception):
    pass


class PrometheusConnectionError(PrometheusError):
    """The HTTP request itself failed"""
    pass


class MetricsUnavailableError(PrometheusError):
    """Prometheus answered but had no usable result"""
    pass


class MetricsParseError(PrometheusError):
    """The response or sample value could not be parsed"""
    pass


def render_query(template: str, pvc_name: str = "", namespace: str = "", pod_name: str = "") -> str:
    """Substitute {{pvc_name}}, {{namespace}} and {{pod_name}} in a PromQL template"""
    return (
        template
        .replace("{{pvc_name}}", pvc_name)
        .replace("{{namespace}}", namespace)
        .replace("{{pod_name}}", pod_name)
    )


def query_instant(promql: str, prometheus_url: str, timeout: Optional[int] = None) -> List[Dict[str, Any]]:
    """
    Query Prometheus `/api/v1/query` and return `data.result`.
    The expression is URL-encoded by requests as the `query` parameter.
    """
    url = f"{prometheus_url.rstrip('/')}/api/v1/query"
    try:
        r = requests.get(url, params={"query": promql}, timeout=timeout or PROMETHEUS_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        raise PrometheusConnectionError(f"request failed: {e}")
    if r.status_code != 200:
        raise MetricsUnavailableError(f"prometheus returned status {r.status_code}: {r.text}")
    try:
        data = r.json()
    except ValueError as e:
        raise MetricsParseError(f"invalid JSON from prometheus: {e}")
    if not isinstance(data, dict) or data.get("status") != "success":
        raise MetricsUnavailableError(f"prometheus error for query {promql}: {data}")
    result = (data.get("data") or {}).get("result") or []
    if not result:
        raise MetricsUnavailableError(f"no data returned from Prometheus for query: {promql}")
    return result


def parse_sample(result: List[Dict[str, Any]]) -> MetricSample:
    """Parse the first vector element's `value: [timestamp, "number"]`"""
    value = result[0].get("value") if isinstance(result[0], dict) else None
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise MetricsParseError(f"unexpected value format in Prometheus response: {value!r}")
    try:
        number = float(value[1])
    except (TypeError, ValueError):
        raise MetricsParseError(f"could not parse sample value {value[1]!r} as a number")
    if not math.isfinite(number):
        raise MetricsParseError(f"sample value {value[1]!r} is not a finite number")
    return MetricSample(value=number)


class MetricsGateway:
    """Fetches the metrics the control loop decides on

    Args:
        prometheus_url: Base URL of the Prometheus server
        queries: PromQL templates for disk usage, ingress and egress
        timeout: Request timeout in seconds
        logger: Logger to report to (defaults to this module's logger)
    """

    def __init__(
        self,
        prometheus_url: str,
        queries: QueryTemplates,
        timeout: int = PROMETHEUS_TIMEOUT_SECONDS,
        logger: Optional[logging.Logger] = None
    ):
        self.prometheus_url = prometheus_url
        self.queries = queries
        self.timeout = timeout
        self.log = logger or logging.getLogger(__name__)

    def _fetch(self, promql: str) -> float:
        self.log.debug(f"Querying Prometheus at {self.prometheus_url}: {promql}")
        return parse_sample(query_instant(promql, self.prometheus_url, self.timeout)).value

    def fetch_disk_usage_percent(self, claim_name: str, namespace: str) -> float:
        """Disk usage of a claim in percent

        Raises:
            PrometheusError: If the query fails or yields no parseable value
        """
        promql = render_query(self.queries.disk_usage, pvc_name=claim_name, namespace=namespace)
        return self._fetch(promql)

    def fetch_network_usage(self, pod_name: str, namespace: str) -> NetworkSample:
        """Ingress and egress bytes/sec of a pod

        Ingress is queried first and its failure raises. An egress failure
        afterwards is reported inside the returned sample instead.
        """
        ingress = self._fetch(render_query(self.queries.ingress, namespace=namespace, pod_name=pod_name))
        try:
            egress = self._fetch(render_query(self.queries.egress, namespace=namespace, pod_name=pod_name))
        except PrometheusError as e:
            self.log.warning(f"Egress query failed for pod {namespace}/{pod_name}: {e}")
            return NetworkSample(ingress=ingress, egress=None, egress_error=e)
        return NetworkSample(ingress=ingress, egress=egress)
