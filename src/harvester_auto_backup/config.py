from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
import os
import re

from .models import RetentionOffset
from .retention import compute_thresholds

SERVICEACCOUNT_TOKEN_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/token")

DEFAULT_WEEKLY_BOUNDARY_OFFSET = RetentionOffset(2, "weeks")
DEFAULT_MONTHLY_BOUNDARY_OFFSET = RetentionOffset(2, "months")
DEFAULT_DELETE_BOUNDARY_OFFSET = RetentionOffset(1, "years")
DEFAULT_REQUEST_TIMEOUT_SECONDS = 20

_OFFSET_PATTERN = re.compile(r"^(\d+)\s*([a-z]+)$")
_OFFSET_UNIT_ALIASES = {
    "d": "days",
    "day": "days",
    "days": "days",
    "w": "weeks",
    "week": "weeks",
    "weeks": "weeks",
    "mo": "months",
    "month": "months",
    "months": "months",
    "y": "years",
    "year": "years",
    "years": "years",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class ConfigurationError(ValueError):
    """Raised when the run cannot start because its configuration is invalid."""


@dataclass(frozen=True)
class AppConfig:
    label: str
    namespace: str | None = None
    verbose: bool = False
    dry_run: bool = False
    weekly_boundary_offset: RetentionOffset = DEFAULT_WEEKLY_BOUNDARY_OFFSET
    monthly_boundary_offset: RetentionOffset = DEFAULT_MONTHLY_BOUNDARY_OFFSET
    delete_boundary_offset: RetentionOffset = DEFAULT_DELETE_BOUNDARY_OFFSET
    kubeconfig_path: str | None = None
    context: str | None = None
    in_cluster: bool = False
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if environ is None else environ

    label = env.get("HAB_LABEL", "").strip()
    if not label:
        raise ConfigurationError("HAB_LABEL is required: set it to the VM label key that marks VMs for backup.")

    in_cluster_raw = env.get("HAB_IN_CLUSTER")
    if in_cluster_raw is None or not in_cluster_raw.strip():
        in_cluster = is_incluster_service_account_environment(env)
    else:
        in_cluster = parse_flag(in_cluster_raw, name="HAB_IN_CLUSTER")

    config = AppConfig(
        label=label,
        namespace=_optional(env.get("HAB_NAMESPACE")),
        verbose=parse_flag(env.get("HAB_VERBOSE", ""), name="HAB_VERBOSE"),
        dry_run=parse_flag(env.get("HAB_DRY_RUN", ""), name="HAB_DRY_RUN"),
        weekly_boundary_offset=_offset_from_env(
            env, "HAB_WEEKLY_BOUNDARY_OFFSET", DEFAULT_WEEKLY_BOUNDARY_OFFSET
        ),
        monthly_boundary_offset=_offset_from_env(
            env, "HAB_MONTHLY_BOUNDARY_OFFSET", DEFAULT_MONTHLY_BOUNDARY_OFFSET
        ),
        delete_boundary_offset=_offset_from_env(
            env, "HAB_DELETE_BOUNDARY_OFFSET", DEFAULT_DELETE_BOUNDARY_OFFSET
        ),
        kubeconfig_path=_optional(env.get("HAB_KUBECONFIG")),
        context=_optional(env.get("HAB_CONTEXT")),
        in_cluster=in_cluster,
        request_timeout_seconds=_positive_int(
            env.get("HAB_REQUEST_TIMEOUT_SECONDS"),
            name="HAB_REQUEST_TIMEOUT_SECONDS",
            default=DEFAULT_REQUEST_TIMEOUT_SECONDS,
        ),
    )
    validate_retention_offsets(config)
    return config


def validate_retention_offsets(config: AppConfig) -> None:
    try:
        compute_thresholds(
            weekly_offset=config.weekly_boundary_offset,
            monthly_offset=config.monthly_boundary_offset,
            delete_offset=config.delete_boundary_offset,
        )
    except ValueError as error:
        raise ConfigurationError(f"Invalid retention offsets: {error}") from error


def parse_offset(value: str) -> RetentionOffset:
    normalized = value.strip().lower()
    match = _OFFSET_PATTERN.match(normalized)
    if match is None:
        raise ConfigurationError(
            f"Invalid retention offset '{value}': expected <amount><unit> such as 14d, 2w, 2mo, or 1y."
        )

    amount = int(match.group(1))
    unit = _OFFSET_UNIT_ALIASES.get(match.group(2))
    if unit is None:
        raise ConfigurationError(
            f"Invalid retention offset unit in '{value}': use d, w, mo, or y."
        )
    if amount <= 0:
        raise ConfigurationError(f"Retention offset '{value}' must be positive.")
    return RetentionOffset(amount, unit)


def parse_flag(value: str, *, name: str) -> bool:
    normalized = value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean flag (true/false), got '{value}'.")


def is_incluster_service_account_environment(environ: Mapping[str, str] | None = None) -> bool:
    env = os.environ if environ is None else environ
    return bool(env.get("KUBERNETES_SERVICE_HOST") and SERVICEACCOUNT_TOKEN_PATH.exists())


def _offset_from_env(env: Mapping[str, str], name: str, default: RetentionOffset) -> RetentionOffset:
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return parse_offset(raw)
    except ConfigurationError as error:
        raise ConfigurationError(f"{name}: {error}") from error


def _positive_int(value: str | None, *, name: str, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer, got '{value}'.") from error
    if parsed <= 0:
        raise ConfigurationError(f"{name} must be positive, got {parsed}.")
    return parsed


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
