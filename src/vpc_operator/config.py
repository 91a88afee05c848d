"""Configuration management with validation.

All settings are resolved once at startup and threaded explicitly into the
dispatcher and every reconciliation pass. Nothing inside a pass reads the
process environment.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_RESYNC_INTERVAL_SECONDS = 600
MIN_RESYNC_INTERVAL_SECONDS = 30
MAX_RESYNC_INTERVAL_SECONDS = 3600

DEFAULT_WORKERS = 2
MAX_WORKERS = 32

DEFAULT_STEP_REQUEUE_SECONDS = 0
MAX_STEP_REQUEUE_SECONDS = 60

RETRY_BACKOFF_BASE_SECONDS = 5
MAX_BACKOFF_SECONDS = 300

DEFAULT_ZONE = "us-south-1"

# Security constraints
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest file

# Input validation patterns
VALID_ENDPOINT_PATTERN = r"^https?://[^\s/]+(/\S*)?$"
VALID_ZONE_PATTERN = r"^[a-z]{2,}-[a-z]+-[0-9]+$"
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$"


def mask_secret(value: str) -> str:
    """Mask a secret for logs and reprs, keeping only a short prefix."""
    if not value:
        return ""
    if len(value) <= 8:
        return "***"
    return value[:4] + "..."


@dataclass(frozen=True)
class CloudCredentials:
    """Credentials handed to the resource client at scope construction.

    The API key never appears in repr output.
    """

    iam_endpoint: str
    api_key: str = field(repr=False)
    service_endpoint: str

    def __repr__(self) -> str:
        return (
            f"CloudCredentials(iam_endpoint={self.iam_endpoint!r}, "
            f"api_key={mask_secret(self.api_key)!r}, "
            f"service_endpoint={self.service_endpoint!r})"
        )


@dataclass(frozen=True)
class OperatorConfig:
    """Operator configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than sending blank values to
    the cloud backend.
    """

    # Required fields
    iam_endpoint: str
    api_key: str = field(repr=False)
    service_endpoint: str

    # Placement
    default_zone: str = DEFAULT_ZONE
    resource_group_id: str | None = None

    # Dispatch
    watch_namespace: str = ""
    workers: int = DEFAULT_WORKERS
    resync_interval_seconds: int = DEFAULT_RESYNC_INTERVAL_SECONDS
    step_requeue_seconds: int = DEFAULT_STEP_REQUEUE_SECONDS
    enable_watch: bool = True

    # Observability
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.iam_endpoint:
            errors.append("IAM_ENDPOINT is required")
        elif not re.match(VALID_ENDPOINT_PATTERN, self.iam_endpoint):
            errors.append(f"IAM_ENDPOINT must be an http(s) URL: {self.iam_endpoint}")

        if not self.api_key:
            errors.append("API_KEY is required")

        if not self.service_endpoint:
            errors.append("SERVICE_ENDPOINT is required")
        elif not re.match(VALID_ENDPOINT_PATTERN, self.service_endpoint):
            errors.append(f"SERVICE_ENDPOINT must be an http(s) URL: {self.service_endpoint}")

        if not re.match(VALID_ZONE_PATTERN, self.default_zone):
            errors.append(f"DEFAULT_ZONE must look like 'us-south-1': {self.default_zone}")

        if self.watch_namespace and not re.match(VALID_NAMESPACE_PATTERN, self.watch_namespace):
            errors.append(f"WATCH_NAMESPACE is not a valid namespace: {self.watch_namespace}")

        if not (1 <= self.workers <= MAX_WORKERS):
            errors.append(f"WORKERS must be between 1 and {MAX_WORKERS}")

        if not (
            MIN_RESYNC_INTERVAL_SECONDS
            <= self.resync_interval_seconds
            <= MAX_RESYNC_INTERVAL_SECONDS
        ):
            errors.append(
                f"RESYNC_INTERVAL must be between {MIN_RESYNC_INTERVAL_SECONDS} "
                f"and {MAX_RESYNC_INTERVAL_SECONDS} seconds"
            )

        if not (0 <= self.step_requeue_seconds <= MAX_STEP_REQUEUE_SECONDS):
            errors.append(
                f"STEP_REQUEUE_SECONDS must be between 0 and {MAX_STEP_REQUEUE_SECONDS}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def __repr__(self) -> str:
        return (
            f"OperatorConfig(iam_endpoint={self.iam_endpoint!r}, "
            f"api_key={mask_secret(self.api_key)!r}, "
            f"service_endpoint={self.service_endpoint!r}, "
            f"default_zone={self.default_zone!r}, "
            f"watch_namespace={self.watch_namespace!r}, workers={self.workers})"
        )

    @property
    def credentials(self) -> CloudCredentials:
        """Credentials passed into every scope construction."""
        return CloudCredentials(
            iam_endpoint=self.iam_endpoint,
            api_key=self.api_key,
            service_endpoint=self.service_endpoint,
        )

    def to_display_dict(self) -> dict[str, object]:
        """Configuration with the API key masked, for CLI output."""
        return {
            "iam_endpoint": self.iam_endpoint,
            "api_key": mask_secret(self.api_key),
            "service_endpoint": self.service_endpoint,
            "default_zone": self.default_zone,
            "resource_group_id": self.resource_group_id,
            "watch_namespace": self.watch_namespace or "(all namespaces)",
            "workers": self.workers,
            "resync_interval_seconds": self.resync_interval_seconds,
            "step_requeue_seconds": self.step_requeue_seconds,
            "enable_watch": self.enable_watch,
            "enable_audit_logging": self.enable_audit_logging,
        }

    @classmethod
    def from_env(cls) -> OperatorConfig:
        """Load configuration from environment variables.

        Environment Variables:
            IAM_ENDPOINT: Identity and access endpoint used to exchange the API key
            API_KEY: Cloud API key
            SERVICE_ENDPOINT: Regional VPC service endpoint
            DEFAULT_ZONE: Zone used when a ClusterRequest names none (default: us-south-1)
            RESOURCE_GROUP_ID: Resource group for created VPCs (optional)
            WATCH_NAMESPACE: Restrict to one namespace (default: all)
            WORKERS: Concurrent reconciliations across objects (default: 2)
            RESYNC_INTERVAL: Seconds between full resyncs (default: 600)
            STEP_REQUEUE_SECONDS: Delay before the pass after a completed step (default: 0)
            ENABLE_WATCH: If "false", rely on resync only (default: true)
            ENABLE_AUDIT_LOGGING: Log one audit record per pass (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            iam_endpoint=os.environ.get("IAM_ENDPOINT", ""),
            api_key=os.environ.get("API_KEY", ""),
            service_endpoint=os.environ.get("SERVICE_ENDPOINT", ""),
            default_zone=os.environ.get("DEFAULT_ZONE", DEFAULT_ZONE),
            resource_group_id=os.environ.get("RESOURCE_GROUP_ID") or None,
            watch_namespace=os.environ.get("WATCH_NAMESPACE", ""),
            workers=get_int("WORKERS", DEFAULT_WORKERS),
            resync_interval_seconds=get_int("RESYNC_INTERVAL", DEFAULT_RESYNC_INTERVAL_SECONDS),
            step_requeue_seconds=get_int("STEP_REQUEUE_SECONDS", DEFAULT_STEP_REQUEUE_SECONDS),
            enable_watch=get_bool("ENABLE_WATCH", True),
            enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
        )
