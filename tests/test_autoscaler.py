"""
Control loop scenarios and CLI entry point
"""
import logging
import threading

import pytest
from unittest.mock import MagicMock, patch

from kubernetes.client.rest import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError

import autoscaler
from autoscaler import ControlLoop, parse_mode, main
from cluster.actuator import RetryPolicy
from cluster.connection import ClusterClients
from cluster.errors import ClusterConnectionError
from metrics.prometheus_client import MetricsGateway, MetricsParseError, MetricsUnavailableError
from models import NetworkSample
from conftest import (
    make_deployment, make_list, make_namespace, make_pod, make_pvc, prometheus_vector,
)

ENABLED = {"autoscaler/enabled": "true"}
UP = {"autoscale.k8s.io/scale-up": "true"}
DOWN = {"autoscale.k8s.io/scale-down": "true"}


def _response(body):
    resp = MagicMock()
    resp.status_code = 200
    resp.json.return_value = body
    return resp


def _loop(settings, core_v1, apps_v1, gateway, no_sleep, **kwargs):
    kwargs.setdefault("poll_seconds", 0.01)
    kwargs.setdefault("wait_timeout_seconds", 5)
    return ControlLoop(settings, core_v1, apps_v1, gateway,
                       retry_policy=RetryPolicy(sleep=no_sleep), **kwargs)


@pytest.fixture
def gateway():
    return MagicMock(spec=MetricsGateway)


class TestParseMode:

    @pytest.mark.parametrize("mode,expected", [
        ("pvc", (True, False)),
        ("ingress", (False, True)),
        ("pvc,ingress", (True, True)),
    ])
    def test_valid_modes(self, mode, expected):
        assert parse_mode(mode) == expected

    @pytest.mark.parametrize("mode", ["", "egress", "ingress,pvc", "PVC"])
    def test_invalid_modes(self, mode):
        with pytest.raises(ValueError):
            parse_mode(mode)


class TestStorageCycle:

    def _cluster(self, core_v1, apps_v1, storage="10Gi"):
        core_v1.list_namespace.return_value = make_list(make_namespace("ns1"))
        apps_v1.list_namespaced_deployment.return_value = make_list(
            make_deployment("db", ENABLED, claims=("data-pvc",))
        )
        pvc = make_pvc(storage)
        core_v1.read_namespaced_persistent_volume_claim.return_value = pvc
        return pvc

    @patch('metrics.prometheus_client.requests.get')
    def test_resizes_claim_over_threshold(self, mock_get, settings, queries, core_v1, apps_v1, no_sleep):
        self._cluster(core_v1, apps_v1)
        mock_get.return_value = _response(prometheus_vector("72"))
        gateway = MetricsGateway(settings.prometheus_url, queries)

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep).run_cycle()

        assert report.claims_resized == 1
        assert report.failures == 0
        assert not report.aborted
        core_v1.replace_namespaced_persistent_volume_claim.assert_called_once()
        body = core_v1.replace_namespaced_persistent_volume_claim.call_args[0][2]
        assert body.spec.resources.requests["storage"] == "16106127360"
        # one read to decide and write, one poll until Bound
        assert core_v1.read_namespaced_persistent_volume_claim.call_count == 2

    @patch('metrics.prometheus_client.requests.get')
    def test_non_finite_usage_skips_only_that_claim(self, mock_get, settings, queries, core_v1, apps_v1, no_sleep):
        self._cluster(core_v1, apps_v1)
        apps_v1.list_namespaced_deployment.return_value = make_list(
            make_deployment("db", ENABLED, claims=("nan-pvc", "inf-pvc", "data-pvc"))
        )
        mock_get.side_effect = [
            _response(prometheus_vector("NaN")),
            _response(prometheus_vector("+Inf")),
            _response(prometheus_vector("72")),
        ]
        gateway = MetricsGateway(settings.prometheus_url, queries)

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep).run_cycle()

        assert report.failures == 2
        assert report.claims_resized == 1
        assert not report.aborted
        assert core_v1.replace_namespaced_persistent_volume_claim.call_args[0][0] == "data-pvc"

    def test_unreachable_api_server_skips_claim(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        core_v1.read_namespaced_persistent_volume_claim.side_effect = MaxRetryError(None, "/api/v1", "refused")

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep).run_cycle()

        assert report.failures == 1
        assert not report.aborted
        gateway.fetch_disk_usage_percent.assert_not_called()

    @patch('metrics.prometheus_client.requests.get')
    def test_below_threshold_no_mutation(self, mock_get, settings, queries, core_v1, apps_v1, no_sleep):
        self._cluster(core_v1, apps_v1)
        mock_get.return_value = _response(prometheus_vector("70.9"))
        gateway = MetricsGateway(settings.prometheus_url, queries)

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep).run_cycle()

        assert report.claims_resized == 0
        core_v1.replace_namespaced_persistent_volume_claim.assert_not_called()

    def test_metrics_error_skips_claim_without_aborting(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        gateway.fetch_disk_usage_percent.side_effect = MetricsUnavailableError("query status error")

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep).run_cycle()

        assert report.failures == 1
        assert not report.aborted
        core_v1.replace_namespaced_persistent_volume_claim.assert_not_called()

    def test_missing_claim_is_skipped(self, settings, core_v1, apps_v1, gateway, no_sleep, caplog):
        self._cluster(core_v1, apps_v1)
        core_v1.read_namespaced_persistent_volume_claim.side_effect = ApiException(status=404, reason="Not Found")

        with caplog.at_level(logging.WARNING):
            report = _loop(settings, core_v1, apps_v1, gateway, no_sleep).run_cycle()

        assert report.failures == 0
        gateway.fetch_disk_usage_percent.assert_not_called()
        assert "does not exist" in caplog.text

    def test_claim_that_never_binds_counts_as_failure(self, settings, core_v1, apps_v1, gateway, no_sleep):
        pvc = self._cluster(core_v1, apps_v1)
        pvc.status.phase = "Pending"
        gateway.fetch_disk_usage_percent.return_value = 95.0

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep, wait_timeout_seconds=0.05).run_cycle()

        assert report.claims_resized == 1
        assert report.failures == 1

    def test_pvc_mode_does_not_touch_network(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        gateway.fetch_disk_usage_percent.return_value = 10.0

        _loop(settings, core_v1, apps_v1, gateway, no_sleep, run_pvc=True, run_ingress=False).run_cycle()

        gateway.fetch_network_usage.assert_not_called()


class TestIngressCycle:

    def _cluster(self, core_v1, apps_v1):
        core_v1.list_namespace.return_value = make_list(make_namespace("ns1"))
        apps_v1.list_namespaced_deployment.return_value = make_list(
            make_deployment("web", ENABLED, template_annotations=UP, replicas=2),
            make_deployment("worker", template_annotations=DOWN, replicas=1),
            make_deployment("api", replicas=4),
        )
        # selector lookup and the ready-replica wait both read the triggering deployment
        apps_v1.read_namespaced_deployment.return_value = make_deployment("web", ENABLED, replicas=3, ready_replicas=3)
        apps_v1.read_namespaced_deployment_scale.side_effect = lambda name, ns: MagicMock()
        core_v1.list_namespaced_pod.return_value = make_list(make_pod("web-1", "ns1"), make_pod("web-2", "ns1"))

    def _written(self, apps_v1):
        return [(c.args[0], c.args[2].spec.replicas)
                for c in apps_v1.replace_namespaced_deployment_scale.call_args_list]

    def test_rescales_namespace_once(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        gateway.fetch_network_usage.return_value = NetworkSample(ingress=1500.0, egress=200.0)

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep,
                       run_pvc=False, run_ingress=True).run_cycle()

        # both pods exceed the threshold but the namespace is rescaled once
        assert gateway.fetch_network_usage.call_count == 2
        assert self._written(apps_v1) == [("web", 3), ("worker", 1), ("api", 2)]
        assert report.deployments_scaled == 3
        assert report.failures == 0

    def test_below_threshold_no_scaling(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        gateway.fetch_network_usage.return_value = NetworkSample(ingress=1000.5, egress=None)

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep,
                       run_pvc=False, run_ingress=True).run_cycle()

        apps_v1.replace_namespaced_deployment_scale.assert_not_called()
        assert report.deployments_scaled == 0

    def test_scale_write_retried_three_times(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        apps_v1.list_namespaced_deployment.return_value = make_list(
            make_deployment("web", ENABLED, template_annotations=UP, replicas=2),
        )
        apps_v1.replace_namespaced_deployment_scale.side_effect = ApiException(status=500, reason="boom")
        gateway.fetch_network_usage.return_value = NetworkSample(ingress=5000.0, egress=1.0)

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep,
                       run_pvc=False, run_ingress=True).run_cycle()

        assert apps_v1.replace_namespaced_deployment_scale.call_count == 3
        assert no_sleep.call_count == 2
        assert report.failures == 1
        assert report.deployments_scaled == 0

    def test_egress_unavailable_is_logged(self, settings, core_v1, apps_v1, gateway, no_sleep, caplog):
        self._cluster(core_v1, apps_v1)
        gateway.fetch_network_usage.return_value = NetworkSample(
            ingress=10.0, egress=None, egress_error=MetricsUnavailableError("empty result")
        )

        with caplog.at_level(logging.INFO):
            _loop(settings, core_v1, apps_v1, gateway, no_sleep, run_pvc=False, run_ingress=True).run_cycle()

        assert "Egress: unavailable" in caplog.text

    def test_non_finite_ingress_skips_only_that_pod(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        gateway.fetch_network_usage.side_effect = [
            MetricsParseError("sample value '+Inf' is not a finite number"),
            NetworkSample(ingress=1500.0, egress=200.0),
        ]

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep,
                       run_pvc=False, run_ingress=True).run_cycle()

        assert report.failures == 1
        assert report.deployments_scaled == 3

    def test_unreachable_api_server_during_scale(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        apps_v1.read_namespaced_deployment_scale.side_effect = ProtocolError("Connection aborted.")
        gateway.fetch_network_usage.return_value = NetworkSample(ingress=1500.0, egress=200.0)

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep,
                       run_pvc=False, run_ingress=True).run_cycle()

        # every deployment exhausts its three attempts, the cycle still completes
        assert apps_v1.read_namespaced_deployment_scale.call_count == 9
        assert report.failures == 3
        assert report.deployments_scaled == 0
        assert not report.aborted

    def test_namespace_listing_unreachable_during_scale(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        listing = apps_v1.list_namespaced_deployment.return_value
        apps_v1.list_namespaced_deployment.side_effect = [listing, MaxRetryError(None, "/apis/apps/v1", "refused")]
        gateway.fetch_network_usage.return_value = NetworkSample(ingress=1500.0, egress=200.0)

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep,
                       run_pvc=False, run_ingress=True).run_cycle()

        assert report.failures == 1
        assert not report.aborted
        apps_v1.replace_namespaced_deployment_scale.assert_not_called()

    def test_pod_lookup_failure_moves_on(self, settings, core_v1, apps_v1, gateway, no_sleep):
        self._cluster(core_v1, apps_v1)
        apps_v1.read_namespaced_deployment.side_effect = ApiException(status=404, reason="Not Found")

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep,
                       run_pvc=False, run_ingress=True).run_cycle()

        assert report.failures == 1
        gateway.fetch_network_usage.assert_not_called()


class TestCycleOutcomes:

    def test_no_annotated_workloads(self, settings, core_v1, apps_v1, gateway, no_sleep):
        core_v1.list_namespace.return_value = make_list(make_namespace("ns1"))
        apps_v1.list_namespaced_deployment.return_value = make_list(make_deployment("web"))

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep).run_cycle()

        assert report.targets == 0
        assert not report.aborted
        gateway.fetch_disk_usage_percent.assert_not_called()

    def test_discovery_failure_aborts_cycle(self, settings, core_v1, apps_v1, gateway, no_sleep):
        core_v1.list_namespace.side_effect = ApiException(status=500, reason="boom")

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep).run_cycle()

        assert report.aborted
        apps_v1.list_namespaced_deployment.assert_not_called()

    def test_unreachable_api_server_aborts_cycle(self, settings, core_v1, apps_v1, gateway, no_sleep):
        core_v1.list_namespace.side_effect = MaxRetryError(None, "/api/v1/namespaces", "connection refused")

        report = _loop(settings, core_v1, apps_v1, gateway, no_sleep).run_cycle()

        assert report.aborted
        assert report.targets == 0

    def test_run_forever_stops_on_event(self, settings, core_v1, apps_v1, gateway, no_sleep):
        stop = threading.Event()
        loop = _loop(settings, core_v1, apps_v1, gateway, no_sleep, stop_event=stop)
        cycles = []

        def cycle():
            cycles.append(1)
            if len(cycles) == 2:
                loop.stop()

        with patch.object(loop, "run_cycle", side_effect=cycle), patch.object(stop, "wait") as wait:
            loop.run_forever()

        assert len(cycles) == 2
        wait.assert_called_with(300)


class TestMain:

    @pytest.fixture
    def config_file(self, tmp_path):
        p = tmp_path / "config.yaml"
        p.write_text(
            "prometheus:\n"
            "  url: http://prometheus:9090\n"
            "  disk_usage_query: 'disk{pvc=\"{{pvc_name}}\"}'\n"
            "  network_usage_queries:\n"
            "    ingress: 'rx{pod=\"{{pod_name}}\"}'\n"
            "    egress: 'tx{pod=\"{{pod_name}}\"}'\n"
        )
        return p

    def test_mode_is_required(self):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2

    def test_invalid_mode(self):
        with pytest.raises(SystemExit) as exc_info:
            main(["--mode", "egress"])
        assert exc_info.value.code == 2

    def test_missing_config_file(self, tmp_path):
        assert main(["--mode", "pvc", "--config", str(tmp_path / "nope.yaml")]) == 1

    def test_invalid_config(self, tmp_path):
        p = tmp_path / "config.yaml"
        p.write_text("interval: 0\n")
        assert main(["--mode", "pvc", "--config", str(p)]) == 1

    def test_cluster_connection_failure(self, config_file):
        with patch.object(autoscaler, "connect_to_cluster", side_effect=ClusterConnectionError("no kubeconfig")):
            assert main(["--mode", "pvc", "--config", str(config_file)]) == 1

    def test_single_cycle(self, config_file, core_v1, apps_v1):
        core_v1.list_namespace.return_value = make_list()
        clients = ClusterClients(core_v1=core_v1, apps_v1=apps_v1)

        with patch.object(autoscaler, "connect_to_cluster", return_value=clients):
            assert main(["--mode", "pvc,ingress", "--config", str(config_file), "--once"]) == 0
        core_v1.list_namespace.assert_called_once()
