"""
Poll-until-ready waits after a mutation.

`wait_until` is the primitive; the PVC and replica waits are thin
predicates over it. A read failure aborts the wait immediately.
"""
import logging
import threading
import time
from typing import Callable, Optional

from config import CONVERGENCE_POLL_SECONDS, CONVERGENCE_TIMEOUT_SECONDS
from models import WaitOutcome, WaitState
from cluster.errors import API_ERRORS, from_read_error

PVC_BOUND_PHASE = "Bound"


def wait_until(
    predicate: Callable[[], bool],
    interval_seconds: float = CONVERGENCE_POLL_SECONDS,
    timeout_seconds: float = CONVERGENCE_TIMEOUT_SECONDS,
    cancel_event: Optional[threading.Event] = None,
    clock: Callable[[], float] = time.monotonic,
    description: str = "",
) -> WaitOutcome:
    """Poll `predicate` every interval until it is true or the deadline passes

    The first poll happens one interval after the call. Setting `cancel_event`
    interrupts the sleep and ends the wait as ABORTED.
    """
    cancel = cancel_event or threading.Event()
    start = clock()
    deadline = start + timeout_seconds

    while True:
        remaining = deadline - clock()
        if remaining <= 0:
            return WaitOutcome(WaitState.TIMED_OUT, clock() - start, description=description)
        if cancel.wait(min(interval_seconds, remaining)):
            return WaitOutcome(WaitState.ABORTED, clock() - start, cancelled=True, description=description)
        if clock() >= deadline:
            return WaitOutcome(WaitState.TIMED_OUT, clock() - start, description=description)
        try:
            if predicate():
                return WaitOutcome(WaitState.READY, clock() - start, description=description)
        except Exception as e:
            return WaitOutcome(WaitState.ABORTED, clock() - start, error=e, description=description)


def wait_for_pvc_bound(
    core_v1,
    claim_name: str,
    namespace: str,
    interval_seconds: float = CONVERGENCE_POLL_SECONDS,
    timeout_seconds: float = CONVERGENCE_TIMEOUT_SECONDS,
    cancel_event: Optional[threading.Event] = None,
    logger: Optional[logging.Logger] = None,
) -> WaitOutcome:
    log = logger or logging.getLogger(__name__)
    what = f"PVC {namespace}/{claim_name}"

    def bound() -> bool:
        try:
            pvc = core_v1.read_namespaced_persistent_volume_claim(claim_name, namespace)
        except API_ERRORS as e:
            raise from_read_error(e, what)
        phase = pvc.status.phase if pvc.status else None
        log.debug(f"{what} phase: {phase}")
        return phase == PVC_BOUND_PHASE

    return wait_until(bound, interval_seconds, timeout_seconds, cancel_event,
                      description=f"{what} to be {PVC_BOUND_PHASE}")


def wait_for_ready_replicas(
    apps_v1,
    deployment: str,
    namespace: str,
    desired_replicas: int,
    interval_seconds: float = CONVERGENCE_POLL_SECONDS,
    timeout_seconds: float = CONVERGENCE_TIMEOUT_SECONDS,
    cancel_event: Optional[threading.Event] = None,
    logger: Optional[logging.Logger] = None,
) -> WaitOutcome:
    log = logger or logging.getLogger(__name__)
    what = f"deployment {namespace}/{deployment}"

    def ready() -> bool:
        try:
            dep = apps_v1.read_namespaced_deployment(deployment, namespace)
        except API_ERRORS as e:
            raise from_read_error(e, what)
        ready_replicas = (dep.status.ready_replicas if dep.status else None) or 0
        log.info(f"{what}: ready replicas {ready_replicas}, desired {desired_replicas}")
        return ready_replicas == desired_replicas

    return wait_until(ready, interval_seconds, timeout_seconds, cancel_event,
                      description=f"{what} to reach {desired_replicas} ready replicas")
