"""Per-pass audit records.

Every reconciliation pass is stamped with one structured record that answers:
- "Which step ran for this object, and from which phase?"
- "What did the pass return to the dispatcher?"
- "Which operator build was running?"
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
class PassRecord:
    """Audit record for one reconciliation pass."""

    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    key: str = ""
    operator_version: str = OPERATOR_VERSION
    operator_instance_id: str = ""

    # Progress
    phase_before: str = ""
    phase_after: str = ""
    step: str = ""

    # Outcome
    outcome: str = ""
    requeue_after_seconds: float | None = None
    duration_seconds: float = 0.0
    error: str | None = None
    error_type: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        return result


class AuditLogger:
    """Writes pass records to the structured log."""

    def __init__(self, enabled: bool = True) -> None:
        self._enabled = enabled
        self._instance_id = os.environ.get("HOSTNAME", "")

    @property
    def enabled(self) -> bool:
        return self._enabled

    def create_record(self, key: str) -> PassRecord:
        return PassRecord(key=key, operator_instance_id=self._instance_id)

    def log_record(self, record: PassRecord) -> None:
        """Log a completed pass record (error level when the pass failed)."""
        if not self._enabled:
            return

        log_level = logging.ERROR if record.error else logging.INFO
        logger.log(
            log_level,
            "Reconciliation pass",
            extra={
                "audit": record.to_dict(),
                # Flatten key fields for easier querying
                "key": record.key,
                "step": record.step,
                "outcome": record.outcome,
                "phase_after": record.phase_after,
                "duration_seconds": record.duration_seconds,
            },
        )
