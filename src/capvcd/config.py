"""Configuration management with validation.

Operational tuning (backoff bounds, poll intervals, deadlines) lives here so
it can be adjusted per installation without touching reconciler logic.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RECONCILE_INTERVAL_SECONDS = 300
MIN_RECONCILE_INTERVAL_SECONDS = 10
MAX_RECONCILE_INTERVAL_SECONDS = 3600

DEFAULT_RECONCILE_TIMEOUT_SECONDS = 120
DEFAULT_MAX_CONCURRENT_RECONCILES = 10
MAX_CONCURRENT_RECONCILES = 100

# Requeue backoff applied by the scheduler after failed or in-flight reconciles
DEFAULT_BACKOFF_FLOOR_SECONDS = 1.0
DEFAULT_BACKOFF_CEILING_SECONDS = 300.0

# Task polling inside a single reconcile call
DEFAULT_TASK_POLL_INTERVAL_MIN_SECONDS = 1.0
DEFAULT_TASK_POLL_INTERVAL_MAX_SECONDS = 10.0
DEFAULT_TASK_POLL_TIMEOUT_SECONDS = 30.0

# How long a create may stay in flight across reconciles before it is Failed
DEFAULT_PROVISIONING_TIMEOUT_SECONDS = 1800

# API retry policy for reads and idempotent mutations
MAX_API_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 1.0

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
DEFAULT_API_VERSION = "38.0"

# Security constraints - enforced limits to prevent abuse
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file
MAX_BOOTSTRAP_DATA_SIZE_BYTES = 64 * 1024  # guestinfo property limit
MAX_VCD_NAME_LENGTH = 128

# Input validation patterns
VALID_ENDPOINT_PATTERN = r"^https?://[A-Za-z0-9.-]+(:[0-9]{1,5})?(/.*)?$"
VALID_ORG_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$"


@dataclass(frozen=True)
class Config:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Required fields
    vcd_endpoint: str
    vcd_org: str

    # Paths
    credentials_dir: Path = field(default_factory=lambda: Path("/etc/capvcd/credentials"))
    manifests_dir: Path | None = None

    # Platform client
    api_version: str = DEFAULT_API_VERSION
    verify_tls: bool = True
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS

    # Scheduling
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    reconcile_interval_seconds: int = DEFAULT_RECONCILE_INTERVAL_SECONDS
    reconcile_timeout_seconds: float = DEFAULT_RECONCILE_TIMEOUT_SECONDS
    backoff_floor_seconds: float = DEFAULT_BACKOFF_FLOOR_SECONDS
    backoff_ceiling_seconds: float = DEFAULT_BACKOFF_CEILING_SECONDS

    # Task polling
    task_poll_interval_min_seconds: float = DEFAULT_TASK_POLL_INTERVAL_MIN_SECONDS
    task_poll_interval_max_seconds: float = DEFAULT_TASK_POLL_INTERVAL_MAX_SECONDS
    task_poll_timeout_seconds: float = DEFAULT_TASK_POLL_TIMEOUT_SECONDS
    provisioning_timeout_seconds: float = DEFAULT_PROVISIONING_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not self.vcd_endpoint:
            errors.append("VCD_ENDPOINT is required")
        elif not re.match(VALID_ENDPOINT_PATTERN, self.vcd_endpoint):
            errors.append(f"VCD_ENDPOINT must be an http(s) URL: {self.vcd_endpoint}")

        if not self.vcd_org:
            errors.append("VCD_ORG is required")
        elif not re.match(VALID_ORG_PATTERN, self.vcd_org):
            errors.append(f"VCD_ORG contains invalid characters: {self.vcd_org}")

        if not (
            MIN_RECONCILE_INTERVAL_SECONDS
            <= self.reconcile_interval_seconds
            <= MAX_RECONCILE_INTERVAL_SECONDS
        ):
            errors.append(
                f"RECONCILE_INTERVAL must be between {MIN_RECONCILE_INTERVAL_SECONDS} "
                f"and {MAX_RECONCILE_INTERVAL_SECONDS} seconds"
            )

        if not (1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES):
            errors.append(
                f"MAX_CONCURRENT_RECONCILES must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        if self.reconcile_timeout_seconds <= 0:
            errors.append("RECONCILE_TIMEOUT must be positive")

        if self.backoff_floor_seconds <= 0:
            errors.append("BACKOFF_FLOOR must be positive")
        elif self.backoff_ceiling_seconds < self.backoff_floor_seconds:
            errors.append("BACKOFF_CEILING must be greater than or equal to BACKOFF_FLOOR")

        if self.task_poll_interval_min_seconds <= 0:
            errors.append("TASK_POLL_INTERVAL_MIN must be positive")
        elif self.task_poll_interval_max_seconds < self.task_poll_interval_min_seconds:
            errors.append(
                "TASK_POLL_INTERVAL_MAX must be greater than or equal to TASK_POLL_INTERVAL_MIN"
            )

        if self.task_poll_timeout_seconds <= 0:
            errors.append("TASK_POLL_TIMEOUT must be positive")

        # A single reconcile must be able to finish at least one poll window
        if self.task_poll_timeout_seconds > self.reconcile_timeout_seconds:
            errors.append("TASK_POLL_TIMEOUT cannot exceed RECONCILE_TIMEOUT")

        if self.provisioning_timeout_seconds < self.task_poll_timeout_seconds:
            errors.append("PROVISIONING_TIMEOUT cannot be shorter than TASK_POLL_TIMEOUT")

        if self.request_timeout_seconds < 1:
            errors.append("VCD_REQUEST_TIMEOUT must be at least 1 second")

        if self.manifests_dir is not None and not self.manifests_dir.exists():
            errors.append(f"Manifests directory does not exist: {self.manifests_dir}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            VCD_ENDPOINT: Base URL of the Cloud Director site (required)
            VCD_ORG: Tenant organization to authenticate against (required)
            VCD_CREDENTIALS_DIR: Directory holding credential files
                (default: /etc/capvcd/credentials)
            VCD_API_VERSION: Legacy API version header (default: 38.0)
            VCD_VERIFY_TLS: Verify server certificates (default: true)
            VCD_REQUEST_TIMEOUT: HTTP timeout in seconds (default: 60)
            MANIFESTS_DIR: Optional directory of YAML manifests to seed the store
            MAX_CONCURRENT_RECONCILES: Worker pool size per kind (default: 10)
            RECONCILE_INTERVAL: Seconds between full resyncs (default: 300)
            RECONCILE_TIMEOUT: Deadline for a single reconcile (default: 120)
            BACKOFF_FLOOR / BACKOFF_CEILING: Requeue backoff bounds in seconds
            TASK_POLL_INTERVAL_MIN / TASK_POLL_INTERVAL_MAX: Task poll interval bounds
            TASK_POLL_TIMEOUT: Max seconds to wait on a task within one reconcile
            PROVISIONING_TIMEOUT: Max seconds a create may stay in flight overall
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        manifests_dir = os.environ.get("MANIFESTS_DIR")

        return cls(
            vcd_endpoint=os.environ.get("VCD_ENDPOINT", ""),
            vcd_org=os.environ.get("VCD_ORG", ""),
            credentials_dir=Path(
                os.environ.get("VCD_CREDENTIALS_DIR", "/etc/capvcd/credentials")
            ),
            manifests_dir=Path(manifests_dir) if manifests_dir else None,
            api_version=os.environ.get("VCD_API_VERSION", DEFAULT_API_VERSION),
            verify_tls=get_bool("VCD_VERIFY_TLS", True),
            request_timeout_seconds=get_int("VCD_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS),
            max_concurrent_reconciles=get_int(
                "MAX_CONCURRENT_RECONCILES", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            reconcile_interval_seconds=get_int(
                "RECONCILE_INTERVAL", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            reconcile_timeout_seconds=get_float(
                "RECONCILE_TIMEOUT", DEFAULT_RECONCILE_TIMEOUT_SECONDS
            ),
            backoff_floor_seconds=get_float("BACKOFF_FLOOR", DEFAULT_BACKOFF_FLOOR_SECONDS),
            backoff_ceiling_seconds=get_float("BACKOFF_CEILING", DEFAULT_BACKOFF_CEILING_SECONDS),
            task_poll_interval_min_seconds=get_float(
                "TASK_POLL_INTERVAL_MIN", DEFAULT_TASK_POLL_INTERVAL_MIN_SECONDS
            ),
            task_poll_interval_max_seconds=get_float(
                "TASK_POLL_INTERVAL_MAX", DEFAULT_TASK_POLL_INTERVAL_MAX_SECONDS
            ),
            task_poll_timeout_seconds=get_float(
                "TASK_POLL_TIMEOUT", DEFAULT_TASK_POLL_TIMEOUT_SECONDS
            ),
            provisioning_timeout_seconds=get_float(
                "PROVISIONING_TIMEOUT", DEFAULT_PROVISIONING_TIMEOUT_SECONDS
            ),
        )
