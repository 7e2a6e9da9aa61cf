"""Kubernetes client bootstrap"""
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.config.config_exception import ConfigException

from cluster.errors import ClusterConnectionError

logger = logging.getLogger(__name__)


@dataclass
class ClusterClients:
    core_v1: Any
    apps_v1: Any


def _load_configuration(kubeconfig: Optional[str]) -> None:
    kubeconfig = kubeconfig or os.getenv("KUBECONFIG")
    if kubeconfig:
        logger.info(f"Loading kubeconfig from: {kubeconfig}")
        k8s_config.load_kube_config(config_file=kubeconfig)
        return

    # Try in-cluster config first (for pods running in cluster)
    try:
        k8s_config.load_incluster_config()
        logger.info("Using in-cluster config")
    except ConfigException:
        logger.info("Not running in a cluster, trying default kubeconfig")
        k8s_config.load_kube_config()
        logger.info("Using default kubeconfig")


def connect_to_cluster(kubeconfig: Optional[str] = None) -> ClusterClients:
    """Build CoreV1 and AppsV1 API clients

    Raises:
        ClusterConnectionError: If no usable configuration could be loaded
    """
    try:
        _load_configuration(kubeconfig)
    except (ConfigException, OSError) as e:
        raise ClusterConnectionError(f"could not load Kubernetes configuration: {e}")

    return ClusterClients(core_v1=client.CoreV1Api(), apps_v1=client.AppsV1Api())
