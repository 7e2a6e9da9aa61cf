"""
Test fixtures and configuration for pytest
"""
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import AutoscalerSettings, QueryTemplates


def make_deployment(name, annotations=None, template_annotations=None, claims=(), replicas=1,
                    ready_replicas=None, match_labels=None):
    """Minimal stand-in for a V1Deployment"""
    volumes = [
        SimpleNamespace(name=f"vol-{i}", persistent_volume_claim=SimpleNamespace(claim_name=c))
        for i, c in enumerate(claims)
    ]
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, annotations=annotations),
        spec=SimpleNamespace(
            replicas=replicas,
            selector=SimpleNamespace(match_labels=match_labels or {"app": name}, match_expressions=None),
            template=SimpleNamespace(
                metadata=SimpleNamespace(annotations=template_annotations),
                spec=SimpleNamespace(volumes=volumes),
            ),
        ),
        status=SimpleNamespace(ready_replicas=ready_replicas),
    )


def make_pvc(storage="10Gi", phase="Bound"):
    return SimpleNamespace(
        spec=SimpleNamespace(resources=SimpleNamespace(requests={"storage": storage})),
        status=SimpleNamespace(phase=phase),
    )


def make_list(*items):
    return SimpleNamespace(items=list(items))


def make_namespace(name):
    return SimpleNamespace(metadata=SimpleNamespace(name=name))


def make_pod(name, namespace):
    return SimpleNamespace(metadata=SimpleNamespace(name=name, namespace=namespace))


def prometheus_vector(value, status="success"):
    """Instant-query response body with a single sample"""
    return {
        "status": status,
        "data": {
            "resultType": "vector",
            "result": [
                {"metric": {"namespace": "ns1"}, "value": [1704355200.123, value]}
            ],
        },
    }


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class FakeEvent:
    """threading.Event stand-in whose wait() advances a FakeClock"""

    def __init__(self, clock, set_after=None):
        self.clock = clock
        self._set = False
        self.set_after = set_after
        self.waits = 0

    def wait(self, timeout=None):
        self.waits += 1
        if self.set_after is not None and self.waits > self.set_after:
            self._set = True
        if not self._set:
            self.clock.now += timeout
        return self._set

    def set(self):
        self._set = True

    def is_set(self):
        return self._set


@pytest.fixture
def settings():
    return AutoscalerSettings(
        desired_replica_count=2,
        interval_minutes=5,
        prometheus_url="http://prometheus:9090",
        disk_resize_threshold=70,
        ingress_scale_threshold=1000,
    )


@pytest.fixture
def queries():
    return QueryTemplates(
        disk_usage='disk_used_percent{persistentvolumeclaim="{{pvc_name}}",namespace="{{namespace}}"}',
        ingress='rate(container_network_receive_bytes_total{pod="{{pod_name}}",namespace="{{namespace}}"}[5m])',
        egress='rate(container_network_transmit_bytes_total{pod="{{pod_name}}",namespace="{{namespace}}"}[5m])',
    )


@pytest.fixture
def core_v1():
    return MagicMock(name="CoreV1Api")


@pytest.fixture
def apps_v1():
    return MagicMock(name="AppsV1Api")


@pytest.fixture
def no_sleep():
    return MagicMock(name="sleep")
