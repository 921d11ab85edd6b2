"""Configuration management with validation.

The bootstrap layer owns how these values are obtained; the reconciliation
core only consumes them as constructor parameters. Feature switches live here
as explicit fields instead of process-wide mutable flags.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_SYNC_INTERVAL_SECONDS = 3600
DEFAULT_POLL_INTERVAL_SECONDS = 600
MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 86400

DEFAULT_TIMEOUT_SECONDS = 20 * 60
MAX_TIMEOUT_SECONDS = 24 * 3600

DEFAULT_MAX_CONCURRENT_RECONCILES = 1
MAX_CONCURRENT_RECONCILES = 64

DEFAULT_NAMESPACE = "tfoperator-system"
DEFAULT_TERRAFORM_BINARY = "terraform"

# Size limits for files read from disk
MAX_MANIFEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max workspace manifest
MAX_OBJECT_FILE_SIZE_BYTES = 1024 * 1024  # 1MB, same as the Kubernetes object limit
MAX_OUTPUT_REPORT_BYTES = 16 * 1024 * 1024

# Input validation patterns
VALID_NAMESPACE_PATTERN = r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$"


@dataclass(frozen=True)
class Config:
    """Operator configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing at runtime.
    """

    # Paths
    workspaces_dir: Path = field(default_factory=lambda: Path("/tf"))
    manifests_dir: Path = field(default_factory=lambda: Path("/manifests"))
    objects_dir: Path = field(default_factory=lambda: Path("/objects"))
    status_dir: Path = field(default_factory=lambda: Path("/status"))
    plugin_cache_dir: Path | None = None

    # Timing
    sync_interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL_SECONDS
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS

    # Behavior
    max_concurrent_reconciles: int = DEFAULT_MAX_CONCURRENT_RECONCILES
    namespace: str = DEFAULT_NAMESPACE
    terraform_binary: str = DEFAULT_TERRAFORM_BINARY
    drift_check: bool = True
    enable_management_policies: bool = False
    debug: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        import re

        errors: list[str] = []

        if not (
            MIN_POLL_INTERVAL_SECONDS <= self.poll_interval_seconds <= MAX_POLL_INTERVAL_SECONDS
        ):
            errors.append(
                f"TFO_POLL_INTERVAL must be between {MIN_POLL_INTERVAL_SECONDS} "
                f"and {MAX_POLL_INTERVAL_SECONDS} seconds"
            )

        if self.sync_interval_seconds < self.poll_interval_seconds:
            errors.append("TFO_SYNC_INTERVAL must not be shorter than TFO_POLL_INTERVAL")

        if not (1 <= self.timeout_seconds <= MAX_TIMEOUT_SECONDS):
            errors.append(f"TFO_TIMEOUT must be between 1 and {MAX_TIMEOUT_SECONDS} seconds")

        if not (1 <= self.max_concurrent_reconciles <= MAX_CONCURRENT_RECONCILES):
            errors.append(
                f"TFO_MAX_RECONCILE_RATE must be between 1 and {MAX_CONCURRENT_RECONCILES}"
            )

        if not re.match(VALID_NAMESPACE_PATTERN, self.namespace):
            errors.append(f"TFO_NAMESPACE must match pattern {VALID_NAMESPACE_PATTERN}: {self.namespace}")

        if not self.terraform_binary:
            errors.append("TFO_TERRAFORM_BINARY is required")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            TFO_SYNC_INTERVAL: Seconds between forced drift checks (default: 3600)
            TFO_POLL_INTERVAL: Seconds between reconcile cycles (default: 600)
            TFO_TIMEOUT: Seconds a terraform process may run before it is killed (default: 1200)
            TFO_MAX_RECONCILE_RATE: Max concurrent reconciles (default: 1)
            TFO_NAMESPACE: Namespace for references without one (default: tfoperator-system)
            TFO_TERRAFORM_BINARY: Path or name of the terraform binary (default: terraform)
            TFO_DRIFT_CHECK: If "false", never run plan for unchanged workspaces (default: true)
            TFO_ENABLE_MANAGEMENT_POLICIES: Honour spec.managementPolicies (default: false)
            TFO_WORKSPACES_DIR: Root of per-workspace directories (default: /tf)
            TFO_MANIFESTS_DIR: Directory of Workspace manifests (default: /manifests)
            TFO_OBJECTS_DIR: Directory of ConfigMaps and Secrets (default: /objects)
            TFO_STATUS_DIR: Directory where workspace status is persisted (default: /status)
            TFO_PLUGIN_CACHE_DIR: Shared provider plugin cache (optional)
            TFO_DEBUG: Enable debug logging (default: false)
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

        plugin_cache = os.environ.get("TFO_PLUGIN_CACHE_DIR")

        return cls(
            workspaces_dir=Path(os.environ.get("TFO_WORKSPACES_DIR", "/tf")),
            manifests_dir=Path(os.environ.get("TFO_MANIFESTS_DIR", "/manifests")),
            objects_dir=Path(os.environ.get("TFO_OBJECTS_DIR", "/objects")),
            status_dir=Path(os.environ.get("TFO_STATUS_DIR", "/status")),
            plugin_cache_dir=Path(plugin_cache) if plugin_cache else None,
            sync_interval_seconds=get_int("TFO_SYNC_INTERVAL", DEFAULT_SYNC_INTERVAL_SECONDS),
            poll_interval_seconds=get_int("TFO_POLL_INTERVAL", DEFAULT_POLL_INTERVAL_SECONDS),
            timeout_seconds=get_int("TFO_TIMEOUT", DEFAULT_TIMEOUT_SECONDS),
            max_concurrent_reconciles=get_int(
                "TFO_MAX_RECONCILE_RATE", DEFAULT_MAX_CONCURRENT_RECONCILES
            ),
            namespace=os.environ.get("TFO_NAMESPACE", DEFAULT_NAMESPACE),
            terraform_binary=os.environ.get("TFO_TERRAFORM_BINARY", DEFAULT_TERRAFORM_BINARY),
            drift_check=get_bool("TFO_DRIFT_CHECK", True),
            enable_management_policies=get_bool("TFO_ENABLE_MANAGEMENT_POLICIES", False),
            debug=get_bool("TFO_DEBUG", False),
        )
