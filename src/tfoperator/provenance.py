"""Reconcile provenance records for audit.

Every reconcile is stamped with a record answering:
- "Which workspace was reconciled, and what did the operator decide?"
- "Which terraform subcommands ran, and how long did they take?"
- "Which desired configuration (fingerprint) was applied?"

Records are emitted as structured log lines; the JSON formatter installed
by main.setup_logging makes them queryable.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class ProcessRecord:
    """One terraform invocation within a reconcile."""

    subcommand: str
    exit_code: int | None = None
    duration_seconds: float = 0.0
    outcome: str = "completed"  # completed, killed, spawn_error


@dataclass
class ReconcileProvenance:
    """Complete provenance record for one reconcile of one workspace."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    workspace: str = ""
    external_name: str = ""
    operator_version: str = OPERATOR_VERSION
    operator_instance_id: str = ""

    # Decision and outcome
    action: str = "observe"  # observe, create, update, delete, orphan, skip
    fingerprint: str = ""
    previous_fingerprint: str = ""
    up_to_date: bool = False
    phase: str = ""
    processes: list[ProcessRecord] = field(default_factory=list)

    # Timing
    duration_seconds: float = 0.0

    # Error tracking
    error: str | None = None
    error_type: str | None = None
    error_phase: str | None = None

    def record_process(
        self,
        subcommand: str,
        *,
        exit_code: int | None = None,
        duration_seconds: float = 0.0,
        outcome: str = "completed",
    ) -> None:
        self.processes.append(
            ProcessRecord(
                subcommand=subcommand,
                exit_code=exit_code,
                duration_seconds=duration_seconds,
                outcome=outcome,
            )
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class ProvenanceLogger:
    """Logs provenance records to the structured logger."""

    def __init__(self) -> None:
        self._instance_id = os.environ.get("HOSTNAME", "")

    def create_provenance(self, workspace: str, external_name: str) -> ReconcileProvenance:
        """Create a new provenance record for a reconcile.

        Args:
            workspace: Resource name of the workspace.
            external_name: External name keying its directory.

        Returns:
            Initialized provenance record.
        """
        return ReconcileProvenance(
            workspace=workspace,
            external_name=external_name,
            operator_version=OPERATOR_VERSION,
            operator_instance_id=self._instance_id,
        )

    def log_provenance(self, provenance: ReconcileProvenance) -> None:
        """Log a completed provenance record."""
        log_level = logging.INFO
        if provenance.error:
            log_level = logging.ERROR

        logger.log(
            log_level,
            "Reconcile provenance",
            extra={
                "provenance": provenance.to_dict(),
                # Flatten key fields for easier querying
                "workspace": provenance.workspace,
                "action": provenance.action,
                "up_to_date": provenance.up_to_date,
                "process_count": len(provenance.processes),
                "operator_version": provenance.operator_version,
                "duration_seconds": provenance.duration_seconds,
            },
        )


# Global singleton for provenance logging
_provenance_logger: ProvenanceLogger | None = None


def get_provenance_logger() -> ProvenanceLogger:
    """Get the global provenance logger instance."""
    global _provenance_logger
    if _provenance_logger is None:
        _provenance_logger = ProvenanceLogger()
    return _provenance_logger
