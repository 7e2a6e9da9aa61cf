import os
import logging
import sys
from dataclasses import dataclass
from typing import Optional, List, Dict, Any
from urllib.parse import urlparse

import yaml


# =============================================================================
# Logging Configuration
# =============================================================================
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT: str = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
# Optional mirror of the console log into a file (e.g. application.log)
LOG_FILE: Optional[str] = os.getenv("LOG_FILE")


def setup_logging():
    """Configure application-wide logging"""
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if LOG_FILE:
        handlers.append(logging.FileHandler(LOG_FILE, mode='w', encoding='utf-8'))
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers
    )
    # Reduce noise from third-party libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.lower() in ("1", "true", "yes", "on")


# =============================================================================
# File locations
# =============================================================================
CONFIG_PATH: str = os.getenv("AUTOSCALER_CONFIG", "config.yaml")
# Query templates live in the main config file unless pointed elsewhere
QUERIES_PATH: str = os.getenv("AUTOSCALER_QUERIES", CONFIG_PATH)

# =============================================================================
# Runtime tunables
# =============================================================================
PROMETHEUS_TIMEOUT_SECONDS: int = int(os.getenv("PROMETHEUS_TIMEOUT_SECONDS", "30"))
SCALE_RETRY_ATTEMPTS: int = int(os.getenv("SCALE_RETRY_ATTEMPTS", "3"))
SCALE_RETRY_DELAY_SECONDS: float = float(os.getenv("SCALE_RETRY_DELAY_SECONDS", "2"))
CONVERGENCE_POLL_SECONDS: float = float(os.getenv("CONVERGENCE_POLL_SECONDS", "1"))
CONVERGENCE_TIMEOUT_SECONDS: float = float(os.getenv("CONVERGENCE_TIMEOUT_SECONDS", "60"))
WAIT_FOR_REPLICAS: bool = _env_bool("WAIT_FOR_REPLICAS", True)

# Annotation contract with the workloads
ENABLED_ANNOTATION: str = "autoscaler/enabled"
SCALE_UP_ANNOTATION: str = "autoscale.k8s.io/scale-up"
SCALE_DOWN_ANNOTATION: str = "autoscale.k8s.io/scale-down"


# =============================================================================
# Default Configuration (overridden by config.yaml)
# =============================================================================
DEFAULT_CONFIG: Dict[str, Any] = {
    "desiredReplicaCount": 1,
    "interval": 5,
    "prometheus": {
        "url": "http://localhost:9090",
    },
    "thresholds": {
        "diskUsage": {"resize": 80},
        "networkUsage": {"ingress": {"scale": 1000000}},
    },
}


@dataclass(frozen=True)
class AutoscalerSettings:
    desired_replica_count: int
    interval_minutes: int
    prometheus_url: str
    disk_resize_threshold: int
    ingress_scale_threshold: int


@dataclass(frozen=True)
class QueryTemplates:
    """PromQL templates with {{pvc_name}}, {{namespace}} and {{pod_name}} placeholders"""
    disk_usage: str
    ingress: str
    egress: str


class ConfigValidationError(Exception):
    """Raised when configuration validation fails"""
    pass


def _read_yaml(path: str) -> Dict[str, Any]:
    with open(path, 'r', encoding='utf-8') as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a YAML mapping at the top level")
    return data


def get_config_value(config: Dict[str, Any], *keys, default=None):
    """Safely get nested config value with default fallback"""
    value = config
    for key in keys:
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigValidationError(f"{name} must be an integer, got {value!r}")


def settings_from_dict(raw: Dict[str, Any]) -> AutoscalerSettings:
    """Build settings from a parsed config mapping, filling gaps from DEFAULT_CONFIG"""
    def pick(*keys):
        return get_config_value(raw, *keys, default=get_config_value(DEFAULT_CONFIG, *keys))

    return AutoscalerSettings(
        desired_replica_count=_as_int("desiredReplicaCount", pick("desiredReplicaCount")),
        interval_minutes=_as_int("interval", pick("interval")),
        prometheus_url=str(pick("prometheus", "url")),
        disk_resize_threshold=_as_int("thresholds.diskUsage.resize", pick("thresholds", "diskUsage", "resize")),
        ingress_scale_threshold=_as_int(
            "thresholds.networkUsage.ingress.scale",
            pick("thresholds", "networkUsage", "ingress", "scale"),
        ),
    )


def load_settings(config_path: Optional[str] = None) -> AutoscalerSettings:
    """Load the autoscaler YAML configuration file

    Raises:
        FileNotFoundError: If the file does not exist
        yaml.YAMLError: If the file is not valid YAML
        ConfigValidationError: If a value has the wrong type
    """
    return settings_from_dict(_read_yaml(config_path or CONFIG_PATH))


def load_queries(queries_path: Optional[str] = None) -> QueryTemplates:
    """Load the PromQL query templates (prometheus.disk_usage_query etc.)"""
    raw = _read_yaml(queries_path or QUERIES_PATH)
    return QueryTemplates(
        disk_usage=str(get_config_value(raw, "prometheus", "disk_usage_query", default="") or ""),
        ingress=str(get_config_value(raw, "prometheus", "network_usage_queries", "ingress", default="") or ""),
        egress=str(get_config_value(raw, "prometheus", "network_usage_queries", "egress", default="") or ""),
    )


# =============================================================================
# Configuration Validation
# =============================================================================
def _validate_positive_int(name: str, value: int) -> None:
    if value <= 0:
        raise ConfigValidationError(f"{name} must be positive, got {value}")


def _validate_non_negative(name: str, value: float) -> None:
    if value < 0:
        raise ConfigValidationError(f"{name} must not be negative, got {value}")


def _validate_url(name: str, value: str) -> None:
    try:
        result = urlparse(value)
        if not all([result.scheme, result.netloc]):
            raise ValueError("Missing scheme or netloc")
        if result.scheme not in ('http', 'https'):
            raise ValueError(f"Invalid scheme: {result.scheme}")
    except ValueError as e:
        raise ConfigValidationError(f"{name} is not a valid URL: {value} ({e})")


def _validate_template(name: str, value: str) -> None:
    if not value.strip():
        raise ConfigValidationError(f"{name} query template is empty")


def validate_settings(settings: AutoscalerSettings,
                      queries: Optional[QueryTemplates] = None,
                      run_pvc: bool = True,
                      run_ingress: bool = True) -> None:
    """Validate configuration values on startup

    Only the query templates of enabled modes are required.

    Raises:
        ConfigValidationError: If any configuration value is invalid
    """
    errors = []

    checks = [
        (_validate_positive_int, "desiredReplicaCount", settings.desired_replica_count),
        (_validate_positive_int, "interval", settings.interval_minutes),
        (_validate_url, "prometheus.url", settings.prometheus_url),
        (_validate_non_negative, "thresholds.diskUsage.resize", settings.disk_resize_threshold),
        (_validate_non_negative, "thresholds.networkUsage.ingress.scale", settings.ingress_scale_threshold),
        (_validate_positive_int, "PROMETHEUS_TIMEOUT_SECONDS", PROMETHEUS_TIMEOUT_SECONDS),
        (_validate_positive_int, "SCALE_RETRY_ATTEMPTS", SCALE_RETRY_ATTEMPTS),
        (_validate_non_negative, "SCALE_RETRY_DELAY_SECONDS", SCALE_RETRY_DELAY_SECONDS),
    ]
    if queries is not None:
        if run_pvc:
            checks.append((_validate_template, "prometheus.disk_usage_query", queries.disk_usage))
        if run_ingress:
            checks.append((_validate_template, "prometheus.network_usage_queries.ingress", queries.ingress))
            checks.append((_validate_template, "prometheus.network_usage_queries.egress", queries.egress))

    for check, name, value in checks:
        try:
            check(name, value)
        except ConfigValidationError as e:
            errors.append(str(e))

    if settings.disk_resize_threshold > 100:
        errors.append(
            f"thresholds.diskUsage.resize is a percentage, got {settings.disk_resize_threshold}"
        )

    if errors:
        raise ConfigValidationError(
            "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        )


__all__ = [
    "LOG_LEVEL",
    "LOG_FORMAT",
    "LOG_FILE",
    "setup_logging",
    "CONFIG_PATH",
    "QUERIES_PATH",
    "PROMETHEUS_TIMEOUT_SECONDS",
    "SCALE_RETRY_ATTEMPTS",
    "SCALE_RETRY_DELAY_SECONDS",
    "CONVERGENCE_POLL_SECONDS",
    "CONVERGENCE_TIMEOUT_SECONDS",
    "WAIT_FOR_REPLICAS",
    "ENABLED_ANNOTATION",
    "SCALE_UP_ANNOTATION",
    "SCALE_DOWN_ANNOTATION",
    "DEFAULT_CONFIG",
    "AutoscalerSettings",
    "QueryTemplates",
    "ConfigValidationError",
    "get_config_value",
    "settings_from_dict",
    "load_settings",
    "load_queries",
    "validate_settings",
]
