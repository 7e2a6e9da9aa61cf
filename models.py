"""
Value types passed between discovery, decisions, actuation and the control loop.
Everything here is rebuilt every cycle; nothing is persisted.
"""
import enum
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union


@dataclass(frozen=True)
class Target:
    """A Deployment carrying the enablement annotation"""
    namespace: str
    workload_name: str
    # Declaration order of the pod template volumes, duplicates kept
    storage_claim_names: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PodRef:
    name: str
    namespace: str


@dataclass(frozen=True)
class MetricSample:
    value: float


@dataclass(frozen=True)
class NetworkSample:
    """Result of the ingress + egress query pair.

    Ingress is always present. When the egress query fails after ingress
    succeeded, `egress` is None and `egress_error` holds the failure.
    """
    ingress: float
    egress: Optional[float] = None
    egress_error: Optional[Exception] = None

    @property
    def complete(self) -> bool:
        return self.egress_error is None


# Scaling decisions -----------------------------------------------------------

@dataclass(frozen=True)
class NoAction:
    pass


@dataclass(frozen=True)
class ResizeStorage:
    target_size_bytes: int


@dataclass(frozen=True)
class ScaleReplicas:
    desired_count: int


ScalingDecision = Union[NoAction, ResizeStorage, ScaleReplicas]


# Actuation results -----------------------------------------------------------

@dataclass
class ActuationOutcome:
    succeeded: bool
    attempts_used: int
    last_error: Optional[Exception] = None


@dataclass
class ScaleResult:
    deployment: str
    namespace: str
    desired_replicas: int
    outcome: ActuationOutcome


# Convergence -----------------------------------------------------------------

class WaitState(enum.Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"
    ABORTED = "aborted"


@dataclass
class WaitOutcome:
    state: WaitState
    elapsed_seconds: float = 0.0
    error: Optional[Exception] = None
    cancelled: bool = False
    description: str = field(default="")

    @property
    def ready(self) -> bool:
        return self.state is WaitState.READY

    def raise_for_state(self) -> None:
        """Raise the error matching a non-ready outcome"""
        # Imported here to keep models free of cluster imports at module load
        from cluster.errors import ConvergenceTimeoutError, WaitCancelledError

        if self.state is WaitState.READY:
            return
        if self.state is WaitState.TIMED_OUT:
            raise ConvergenceTimeoutError(
                f"timed out after {self.elapsed_seconds:.0f}s waiting for {self.description or 'condition'}"
            )
        if self.cancelled:
            raise WaitCancelledError(f"wait for {self.description or 'condition'} was cancelled")
        if self.error is not None:
            raise self.error
