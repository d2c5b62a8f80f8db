"""Per-pass reporting for audit and troubleshooting.

Every reconciliation pass produces one PassReport answering:
- "What did the operator plan, and why?"
- "What happened to each resource?"
- "Which operator version and declaration revision was running?"

DESIGN PHILOSOPHY:
- One structured log entry per pass, plus one per applied change
- Structured JSON format for queryability
- PassReport.to_dict() is also the machine-readable CLI output
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

from .differ import Action, Plan
from .executor import ApplyResult, ApplyStatus, ExecutionOutcome

logger = logging.getLogger(__name__)

# Version is set at build time or falls back to dev
OPERATOR_VERSION = os.environ.get("OPERATOR_VERSION", "dev")


@dataclass
class ChangeSummary:
    """Counts of planned actions."""

    create_count: int = 0
    update_count: int = 0
    delete_count: int = 0
    replace_count: int = 0
    no_op_count: int = 0

    @property
    def total_significant(self) -> int:
        """Total planned actions (create + update + delete)."""
        return self.create_count + self.update_count + self.delete_count

    @classmethod
    def from_plan(cls, plan: Plan) -> ChangeSummary:
        return cls(
            create_count=plan.count(Action.CREATE),
            update_count=plan.count(Action.UPDATE),
            delete_count=plan.count(Action.DELETE),
            replace_count=plan.replace_count,
            no_op_count=plan.count(Action.NO_OP),
        )


@dataclass
class ResourceStatus:
    """Final state of one resource in a pass."""

    action: str
    status: str
    replace: bool = False
    error: str | None = None
    error_type: str | None = None


@dataclass
class PassReport:
    """Complete record of one reconciliation pass."""

    # Timestamp
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    # Identity
    pass_id: str = field(default_factory=lambda: secrets.token_hex(6))
    operator_version: str = OPERATOR_VERSION
    git_commit_sha: str = ""
    spec_path: str = ""

    # Outcome
    dry_run: bool = False
    drift_detected: bool = False
    change_summary: ChangeSummary = field(default_factory=ChangeSummary)
    resources: dict[str, list[ResourceStatus]] = field(default_factory=dict)
    applied_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    cancelled: bool = False

    # Timing
    duration_seconds: float = 0.0

    # Pass-level error (fetch, planning, persistence)
    error: str | None = None
    error_type: str | None = None

    @property
    def success(self) -> bool:
        return (
            self.error is None
            and self.failed_count == 0
            and self.skipped_count == 0
            and not self.cancelled
        )

    def record_plan(self, plan: Plan) -> None:
        self.change_summary = ChangeSummary.from_plan(plan)
        self.drift_detected = not plan.is_noop
        for step in plan.steps:
            if step.action == Action.NO_OP:
                self.resources.setdefault(step.resource_id, []).append(
                    ResourceStatus(action=step.action.value, status="Unchanged")
                )
            elif self.dry_run:
                self.resources.setdefault(step.resource_id, []).append(
                    ResourceStatus(
                        action=step.action.value, status="Planned", replace=step.replace
                    )
                )

    def record_outcome(self, outcome: ExecutionOutcome) -> None:
        for result in outcome.results:
            self.resources.setdefault(result.resource_id, []).append(
                ResourceStatus(
                    action=result.action.value,
                    status=result.status.value,
                    replace=result.replace,
                    error=result.error,
                    error_type=result.error_type,
                )
            )
        self.applied_count = len(outcome.by_status(ApplyStatus.SUCCEEDED))
        self.failed_count = len(outcome.failed)
        self.skipped_count = len(outcome.skipped)
        self.cancelled = outcome.cancelled

    def record_error(self, error: Exception) -> None:
        self.error = str(error)
        self.error_type = type(error).__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["timestamp"] = self.timestamp.isoformat()
        result["success"] = self.success
        return result


class ReportLogger:
    """Logs pass reports to the structured logger (stdout)."""

    def __init__(self) -> None:
        self._git_commit_sha = os.environ.get("GIT_COMMIT_SHA", "")

    def create_report(self, spec_path: str, dry_run: bool) -> PassReport:
        """Create a new report for a reconciliation pass."""
        return PassReport(
            operator_version=OPERATOR_VERSION,
            git_commit_sha=self._git_commit_sha,
            spec_path=spec_path,
            dry_run=dry_run,
        )

    def log_report(self, report: PassReport) -> None:
        """Log a completed pass report.

        The structured data enables queries like:
        - "Which passes failed in the last 24h?"
        - "Which commit introduced this drift?"
        """
        log_level = logging.INFO
        if report.error or report.failed_count:
            log_level = logging.ERROR
        elif report.skipped_count or report.cancelled:
            log_level = logging.WARNING

        summary = report.change_summary
        logger.log(
            log_level,
            "Reconciliation pass report",
            extra={
                "report": report.to_dict(),
                # Flatten key fields for easier querying
                "pass_id": report.pass_id,
                "dry_run": report.dry_run,
                "drift_detected": report.drift_detected,
                "create": summary.create_count,
                "update": summary.update_count,
                "delete": summary.delete_count,
                "replace": summary.replace_count,
                "no_op": summary.no_op_count,
                "applied": report.applied_count,
                "failed": report.failed_count,
                "skipped": report.skipped_count,
                "git_commit": report.git_commit_sha,
                "duration_seconds": report.duration_seconds,
            },
        )

    def log_change_detail(self, report: PassReport, result: ApplyResult) -> None:
        """Log one applied change for fine-grained audit."""
        logger.info(
            "Resource change",
            extra={
                "pass_id": report.pass_id,
                "git_commit": report.git_commit_sha,
                "resource_id": result.resource_id,
                "action": result.action.value,
                "replace": result.replace,
                "status": result.status.value,
                "attempts": result.attempts,
            },
        )


# Global singleton for report logging
_report_logger: ReportLogger | None = None


def get_report_logger() -> ReportLogger:
    """Get the global report logger instance."""
    global _report_logger
    if _report_logger is None:
        _report_logger = ReportLogger()
    return _report_logger
