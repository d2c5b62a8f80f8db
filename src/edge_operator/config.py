"""Configuration management with validation.

All limits are enforced at configuration load time so that a misconfigured
operator fails at startup rather than in the middle of an apply.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 30
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_MAX_CONCURRENT_APPLIES = 4
MAX_CONCURRENT_APPLIES_LIMIT = 32

DEFAULT_MAX_APPLY_RETRIES = 3
MAX_APPLY_RETRIES_LIMIT = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 2.0

DEFAULT_BACKEND_CALL_TIMEOUT_SECONDS = 300
MAX_BACKEND_CALL_TIMEOUT_SECONDS = 3600

# Safety limit: a plan with more actions than this is refused
DEFAULT_MAX_CHANGES_PER_PASS = 100
MAX_CHANGES_PER_PASS_LIMIT = 1000

DEFAULT_SPEC_PATH = "/specs"
DEFAULT_STATE_FILE = "/var/lib/edge-operator/state.json"

# Input validation patterns
VALID_REGION_PATTERN = r"^[a-z]{2}(-gov)?-[a-z]+-\d$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    aws_region: str

    # Paths
    spec_path: Path = field(default_factory=lambda: Path(DEFAULT_SPEC_PATH))
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))

    # Credentials are resolved by the SDK default chains; these only select them
    aws_profile: str | None = None
    kube_context: str | None = None
    kube_in_cluster: bool = False

    # Timing
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    backend_call_timeout_seconds: int = DEFAULT_BACKEND_CALL_TIMEOUT_SECONDS

    # Apply behavior
    max_concurrent_applies: int = DEFAULT_MAX_CONCURRENT_APPLIES
    max_apply_retries: int = DEFAULT_MAX_APPLY_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS
    max_changes_per_pass: int = DEFAULT_MAX_CHANGES_PER_PASS
    allow_partial_state: bool = False
    dry_run: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not self.aws_region:
            errors.append("AWS_REGION is required")
        elif not re.match(VALID_REGION_PATTERN, self.aws_region):
            errors.append(f"AWS_REGION must be a valid AWS region: {self.aws_region}")

        if self.kube_in_cluster and self.kube_context:
            errors.append("KUBE_CONTEXT cannot be set when KUBE_IN_CLUSTER is true")

        # Timing validation
        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not 1 <= self.backend_call_timeout_seconds <= MAX_BACKEND_CALL_TIMEOUT_SECONDS:
            errors.append(
                f"BACKEND_CALL_TIMEOUT must be between 1 and "
                f"{MAX_BACKEND_CALL_TIMEOUT_SECONDS} seconds"
            )

        # Apply behavior validation
        if not 1 <= self.max_concurrent_applies <= MAX_CONCURRENT_APPLIES_LIMIT:
            errors.append(
                f"MAX_CONCURRENT_APPLIES must be between 1 and {MAX_CONCURRENT_APPLIES_LIMIT}"
            )

        if not 1 <= self.max_apply_retries <= MAX_APPLY_RETRIES_LIMIT:
            errors.append(f"MAX_APPLY_RETRIES must be between 1 and {MAX_APPLY_RETRIES_LIMIT}")

        if self.retry_backoff_base_seconds <= 0:
            errors.append("RETRY_BACKOFF_BASE must be greater than 0")

        if not 1 <= self.max_changes_per_pass <= MAX_CHANGES_PER_PASS_LIMIT:
            errors.append(
                f"MAX_CHANGES_PER_PASS must be between 1 and {MAX_CHANGES_PER_PASS_LIMIT}"
            )

        # Path validation
        if not self.spec_path.exists():
            errors.append(f"Spec path does not exist: {self.spec_path}")

        if not self.state_file.parent.is_dir():
            errors.append(f"State file directory does not exist: {self.state_file.parent}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Config:
        """Load configuration from environment variables.

        Args:
            environ: Variables to read instead of os.environ.

        Environment Variables:
            AWS_REGION: Region of the ALB, WAF and Route 53 clients (required)
            AWS_PROFILE: Named AWS profile (default: SDK default chain)
            KUBE_CONTEXT: kubeconfig context (default: current context)
            KUBE_IN_CLUSTER: If "true", use the pod service account
            SPEC_PATH: YAML declaration file or directory (default: /specs)
            STATE_FILE: Persisted state file (default: /var/lib/edge-operator/state.json)
            RECONCILE_INTERVAL: Seconds between passes (default: 300)
            BACKEND_CALL_TIMEOUT: Seconds before a backend call is logged as slow (default: 300)
            MAX_CONCURRENT_APPLIES: Parallel backend calls (default: 4)
            MAX_APPLY_RETRIES: Attempts per action (default: 3)
            RETRY_BACKOFF_BASE: Seconds before the first retry (default: 2.0)
            MAX_CHANGES_PER_PASS: Refuse plans with more actions (default: 100)
            ALLOW_PARTIAL_STATE: If "true", plan around unreachable backends
            DRY_RUN: If "true", only plan without applying (default: false)
        """

        env = os.environ if environ is None else environ

        def get_int(key: str, default: int) -> int:
            value = env.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = env.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = env.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            aws_region=env.get("AWS_REGION", ""),
            spec_path=Path(env.get("SPEC_PATH", DEFAULT_SPEC_PATH)),
            state_file=Path(env.get("STATE_FILE", DEFAULT_STATE_FILE)),
            aws_profile=env.get("AWS_PROFILE") or None,
            kube_context=env.get("KUBE_CONTEXT") or None,
            kube_in_cluster=get_bool("KUBE_IN_CLUSTER", False),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            backend_call_timeout_seconds=get_int(
                "BACKEND_CALL_TIMEOUT", DEFAULT_BACKEND_CALL_TIMEOUT_SECONDS
            ),
            max_concurrent_applies=get_int(
                "MAX_CONCURRENT_APPLIES", DEFAULT_MAX_CONCURRENT_APPLIES
            ),
            max_apply_retries=get_int("MAX_APPLY_RETRIES", DEFAULT_MAX_APPLY_RETRIES),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            max_changes_per_pass=get_int("MAX_CHANGES_PER_PASS", DEFAULT_MAX_CHANGES_PER_PASS),
            allow_partial_state=get_bool("ALLOW_PARTIAL_STATE", False),
            dry_run=get_bool("DRY_RUN", False),
        )
