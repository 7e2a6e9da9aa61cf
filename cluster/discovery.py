from typing import Any, Dict, List, Optional, Tuple
import logging

from kubernetes.utils import parse_quantity

from config import ENABLED_ANNOTATION
from models import Target, PodRef
from cluster.errors import API_ERRORS, NotFoundError, from_list_error, from_read_error


def _is_enabled(annotations: Optional[Dict[str, str]]) -> bool:
    # Exact string match, "True" or "yes" do not count
    return (annotations or {}).get(ENABLED_ANNOTATION) == "true"


def _claim_names(deployment: Any) -> Tuple[str, ...]:
    volumes = deployment.spec.template.spec.volumes or []
    return tuple(
        v.persistent_volume_claim.claim_name
        for v in volumes
        if v.persistent_volume_claim is not None
    )


def discover_targets(core_v1, apps_v1, logger: Optional[logging.Logger] = None) -> Tuple[List[Target], bool]:
    """
    Scan every namespace for Deployments annotated `autoscaler/enabled: "true"`.

    Returns (targets, found). `found` is False when nothing is annotated.

    Raises:
        ClusterQueryError: If listing namespaces or deployments fails
    """
    log = logger or logging.getLogger(__name__)
    log.info("Checking annotations...")
    try:
        namespaces = core_v1.list_namespace()
    except API_ERRORS as e:
        raise from_list_error(e, "namespaces")

    targets: List[Target] = []
    for ns in namespaces.items:
        ns_name = ns.metadata.name
        try:
            deployments = apps_v1.list_namespaced_deployment(ns_name)
        except API_ERRORS as e:
            raise from_list_error(e, f"deployments in namespace {ns_name}")
        for dep in deployments.items:
            if not _is_enabled(dep.metadata.annotations):
                continue
            targets.append(Target(
                namespace=ns_name,
                workload_name=dep.metadata.name,
                storage_claim_names=_claim_names(dep),
            ))

    return targets, bool(targets)


def format_label_selector(selector: Any) -> str:
    """Render a V1LabelSelector as a label selector string (`a=b,c in (d,e)`)"""
    if selector is None:
        return ""
    parts = [f"{k}={v}" for k, v in sorted((selector.match_labels or {}).items())]
    for expr in selector.match_expressions or []:
        values = ",".join(expr.values or [])
        if expr.operator == "In":
            parts.append(f"{expr.key} in ({values})")
        elif expr.operator == "NotIn":
            parts.append(f"{expr.key} notin ({values})")
        elif expr.operator == "Exists":
            parts.append(expr.key)
        elif expr.operator == "DoesNotExist":
            parts.append(f"!{expr.key}")
    return ",".join(parts)


def get_pods_for_deployment(core_v1, apps_v1, deployment: str, namespace: str) -> List[PodRef]:
    """Pods matched by the deployment's selector

    Raises:
        NotFoundError: If the deployment no longer exists
        ClusterQueryError: On any other API failure
    """
    try:
        dep = apps_v1.read_namespaced_deployment(deployment, namespace)
    except API_ERRORS as e:
        raise from_read_error(e, f"deployment {namespace}/{deployment}")

    selector = format_label_selector(dep.spec.selector)
    try:
        pods = core_v1.list_namespaced_pod(namespace, label_selector=selector)
    except API_ERRORS as e:
        raise from_list_error(e, f"pods for deployment {namespace}/{deployment}")
    return [PodRef(name=p.metadata.name, namespace=p.metadata.namespace or namespace) for p in pods.items]


def read_claim(core_v1, claim_name: str, namespace: str) -> Optional[Any]:
    """Read a PVC, None when it does not exist

    Raises:
        ClusterQueryError: On any failure other than 404
    """
    try:
        return core_v1.read_namespaced_persistent_volume_claim(claim_name, namespace)
    except API_ERRORS as e:
        error = from_read_error(e, f"PVC {namespace}/{claim_name}")
        if isinstance(error, NotFoundError):
            return None
        raise error


def storage_request_bytes(pvc: Any) -> int:
    """Current `spec.resources.requests.storage` of a claim, in bytes"""
    requests = (pvc.spec.resources.requests or {}) if pvc.spec.resources else {}
    quantity = requests.get("storage")
    if quantity is None:
        return 0
    return int(parse_quantity(quantity))
