"""
Cluster mutations: PVC storage expansion and namespace-wide replica scaling.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple, Type

from config import SCALE_RETRY_ATTEMPTS, SCALE_RETRY_DELAY_SECONDS
from models import ActuationOutcome, ScaleResult
from analysis.decisions import resize_target_bytes, desired_replicas_from_intent
from cluster.discovery import storage_request_bytes
from cluster.errors import (
    API_ERRORS, ClusterError, MutationError, NotFoundError,
    from_list_error, from_read_error, from_write_error,
)


@dataclass
class RetryPolicy:
    """Bounded retry with a fixed (backoff_factor=1) or growing delay

    Args:
        max_attempts: Total attempts including the first one
        delay_seconds: Wait before the second attempt
        backoff_factor: Multiplier applied to the delay for each later attempt
        sleep: Sleep function, swappable in tests
    """
    max_attempts: int = SCALE_RETRY_ATTEMPTS
    delay_seconds: float = SCALE_RETRY_DELAY_SECONDS
    backoff_factor: float = 1.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-based)"""
        return self.delay_seconds * (self.backoff_factor ** (attempt - 1))

    def run(
        self,
        operation: Callable[[], None],
        retry_on: Tuple[Type[Exception], ...] = (ClusterError,),
        give_up_on: Tuple[Type[Exception], ...] = (NotFoundError,),
        on_failure: Optional[Callable[[int, Exception], None]] = None,
    ) -> ActuationOutcome:
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                operation()
                return ActuationOutcome(succeeded=True, attempts_used=attempt)
            except give_up_on as e:
                if on_failure:
                    on_failure(attempt, e)
                return ActuationOutcome(succeeded=False, attempts_used=attempt, last_error=e)
            except retry_on as e:
                last_error = e
                if on_failure:
                    on_failure(attempt, e)
                if attempt < self.max_attempts:
                    self.sleep(self.delay_for(attempt))
        return ActuationOutcome(succeeded=False, attempts_used=self.max_attempts, last_error=last_error)


def resize_pvc(
    core_v1,
    claim_name: str,
    namespace: str,
    target_size_bytes: Optional[int] = None,
    pvc: Optional[Any] = None,
    logger: Optional[logging.Logger] = None,
) -> int:
    """Grow a PVC's storage request with a single update call

    `target_size_bytes` defaults to 50% over the current request. `pvc` is the
    claim as already read by the caller; it is read here when omitted.
    Returns the new size in bytes.

    Raises:
        NotFoundError: If the claim no longer exists
        UpdateConflictError: If the claim changed since it was read
        MutationError: On any other failed update, or when the claim would not grow
    """
    log = logger or logging.getLogger(__name__)
    what = f"PVC {namespace}/{claim_name}"
    if pvc is None:
        try:
            pvc = core_v1.read_namespaced_persistent_volume_claim(claim_name, namespace)
        except API_ERRORS as e:
            raise from_read_error(e, what)

    current = storage_request_bytes(pvc)
    new_size = target_size_bytes if target_size_bytes is not None else resize_target_bytes(current)
    if new_size <= current:
        raise MutationError(f"{what} cannot grow from {current} to {new_size} bytes")

    pvc.spec.resources.requests["storage"] = str(new_size)
    log.info(f"Resizing {what} from {current} to {new_size} bytes")
    try:
        core_v1.replace_namespaced_persistent_volume_claim(claim_name, namespace, pvc)
    except API_ERRORS as e:
        raise from_write_error(e, what)
    return new_size


def _set_scale(apps_v1, deployment: str, namespace: str, replicas: int) -> None:
    what = f"scale of deployment {namespace}/{deployment}"
    try:
        scale = apps_v1.read_namespaced_deployment_scale(deployment, namespace)
    except API_ERRORS as e:
        raise from_read_error(e, what)
    scale.spec.replicas = replicas
    try:
        apps_v1.replace_namespaced_deployment_scale(deployment, namespace, scale)
    except API_ERRORS as e:
        raise from_write_error(e, what)


def scale_namespace_deployments(
    apps_v1,
    namespace: str,
    fallback_replicas: int,
    retry_policy: Optional[RetryPolicy] = None,
    logger: Optional[logging.Logger] = None,
) -> List[ScaleResult]:
    """Re-evaluate and scale every deployment in a namespace

    Each deployment's desired count comes from its pod template's scale-up /
    scale-down annotations, falling back to `fallback_replicas`. A deployment
    that exhausts its retries does not stop the others.

    Raises:
        ClusterQueryError: If the deployments cannot be listed
    """
    log = logger or logging.getLogger(__name__)
    policy = retry_policy or RetryPolicy()
    try:
        deployments = apps_v1.list_namespaced_deployment(namespace)
    except API_ERRORS as e:
        raise from_list_error(e, f"deployments in namespace {namespace}")

    results: List[ScaleResult] = []
    for dep in deployments.items:
        name = dep.metadata.name
        current = dep.spec.replicas if dep.spec.replicas is not None else 1
        template_annotations = dep.spec.template.metadata.annotations if dep.spec.template.metadata else None
        desired = desired_replicas_from_intent(current, template_annotations, fallback_replicas)
        log.info(f"Setting desired replicas for deployment {namespace}/{name}: {current} -> {desired}")

        def report(attempt: int, error: Exception, name=name) -> None:
            log.error(f"Failed to update scale for deployment {namespace}/{name} (attempt {attempt}/{policy.max_attempts}): {error}")

        outcome = policy.run(lambda: _set_scale(apps_v1, name, namespace, desired), on_failure=report)
        if outcome.succeeded:
            log.info(f"Deployment {namespace}/{name} scaled to {desired} replicas")
        results.append(ScaleResult(deployment=name, namespace=namespace, desired_replicas=desired, outcome=outcome))
    return results
