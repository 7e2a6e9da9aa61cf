"""
Scaling decisions - pure functions, no I/O.
Thresholds compare against the integer part of the measured value.
"""
from typing import Dict, Optional

from config import SCALE_UP_ANNOTATION, SCALE_DOWN_ANNOTATION
from models import NoAction, ResizeStorage, ScaleReplicas, ScalingDecision


def resize_target_bytes(current_size_bytes: int) -> int:
    """Grow by half, integer division (3 -> 4, 1 -> 1)"""
    return current_size_bytes + current_size_bytes // 2


def exceeds(value: float, threshold: int) -> bool:
    return int(value) > threshold


def decide_storage(disk_usage_percent: float, resize_threshold: int, current_size_bytes: int) -> ScalingDecision:
    """Resize when usage is over the threshold and growth is possible"""
    if not exceeds(disk_usage_percent, resize_threshold):
        return NoAction()
    target = resize_target_bytes(current_size_bytes)
    if target <= current_size_bytes:
        # Tiny claims cannot grow by integer halving
        return NoAction()
    return ResizeStorage(target_size_bytes=target)


def decide_network(ingress_bytes_per_sec: float, ingress_scale_threshold: int, fallback_replicas: int) -> ScalingDecision:
    """Ingress over threshold triggers a namespace scale.

    `fallback_replicas` is applied only to deployments without a scale-up or
    scale-down annotation; see desired_replicas_from_intent.
    """
    if exceeds(ingress_bytes_per_sec, ingress_scale_threshold):
        return ScaleReplicas(desired_count=fallback_replicas)
    return NoAction()


def desired_replicas_from_intent(current: int, annotations: Optional[Dict[str, str]], fallback: int) -> int:
    annotations = annotations or {}
    if annotations.get(SCALE_UP_ANNOTATION) == "true":
        return current + 1
    if annotations.get(SCALE_DOWN_ANNOTATION) == "true":
        return max(current - 1, 1)
    return fallback
