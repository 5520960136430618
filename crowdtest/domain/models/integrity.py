"""
Data Integrity Domain Models.

Models for the reconciliation job that looks for completion side effects
that should exist but do not, and for slot counters that drifted from the
sessions holding them.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum


class IntegrityIssueType(Enum):
    """Types of integrity issues detected."""
    MISSING_EARNING = "missing_earning"     # COMPLETED session without an earning
    CAPACITY_DRIFT = "capacity_drift"       # Slot counter differs from slot-holding sessions


class IntegritySeverity(Enum):
    """Severity level of integrity issues."""
    CRITICAL = "critical"   # Money or reputation is wrong
    WARNING = "warning"     # Admission may be wrong


class RepairAction(Enum):
    """Available repair actions for issues."""
    RERUN_COMPLETION = "rerun_completion"
    RECOUNT_SLOTS = "recount_slots"
    MANUAL_REQUIRED = "manual_required"


@dataclass
class IntegrityIssue:
    """
    Single integrity issue detected during reconciliation.

    Attributes:
        issue_type: Type of the issue
        severity: How serious the issue is
        source_table: Table where the issue was found
        source_id: ID of the problematic record
        message: Human-readable description
        details: Additional context
        suggested_action: Recommended repair action
        auto_repairable: Whether it can be fixed automatically
        repaired: Set once a repair succeeded
    """

    issue_type: IntegrityIssueType
    severity: IntegritySeverity
    source_table: str
    source_id: str

    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    suggested_action: RepairAction = RepairAction.MANUAL_REQUIRED
    auto_repairable: bool = False
    repaired: bool = False

    @classmethod
    def missing_earning(cls, session_id: str, participant_id: str, test_id: str) -> "IntegrityIssue":
        """Factory for a completed session whose side effects never ran."""
        return cls(
            issue_type=IntegrityIssueType.MISSING_EARNING,
            severity=IntegritySeverity.CRITICAL,
            source_table="test_sessions",
            source_id=session_id,
            message=f"Completed session {session_id} has no earning",
            details={"participant_id": participant_id, "test_id": test_id},
            suggested_action=RepairAction.RERUN_COMPLETION,
            auto_repairable=True,
        )

    @classmethod
    def capacity_drift(
        cls,
        test_id: str,
        recorded: int,
        actual: int,
        max_participants: int,
    ) -> "IntegrityIssue":
        """Factory for a slot counter that disagrees with the sessions."""
        repairable = actual <= max_participants
        return cls(
            issue_type=IntegrityIssueType.CAPACITY_DRIFT,
            severity=IntegritySeverity.WARNING,
            source_table="crowd_tests",
            source_id=test_id,
            message=(
                f"Test {test_id} records {recorded} participants "
                f"but {actual} sessions hold a slot"
            ),
            details={"recorded": recorded, "actual": actual, "max_participants": max_participants},
            suggested_action=RepairAction.RECOUNT_SLOTS if repairable else RepairAction.MANUAL_REQUIRED,
            auto_repairable=repairable,
        )


@dataclass
class IntegrityReport:
    """
    Aggregated reconciliation report.

    Contains all issues found during a run, with statistics and repair
    results if repair was performed.
    """

    checked_at: datetime = field(default_factory=datetime.now)

    total_checked: int = 0
    issues_found: int = 0
    critical_count: int = 0
    warning_count: int = 0

    issues: List[IntegrityIssue] = field(default_factory=list)

    repaired_count: int = 0
    repair_failed_count: int = 0

    def add_issue(self, issue: IntegrityIssue) -> None:
        """Add an issue to the report."""
        self.issues.append(issue)
        self.issues_found += 1

        if issue.severity == IntegritySeverity.CRITICAL:
            self.critical_count += 1
        else:
            self.warning_count += 1

    @property
    def is_healthy(self) -> bool:
        """True when nothing at all was found."""
        return self.issues_found == 0

    def find_issue(self, source_id: str) -> Optional[IntegrityIssue]:
        return next((i for i in self.issues if i.source_id == source_id), None)

    def summary(self) -> str:
        """Generate human-readable summary."""
        status = "HEALTHY" if self.is_healthy else "UNHEALTHY"
        lines = [
            status,
            f"Checked: {self.total_checked} items",
            f"Issues: {self.issues_found} (Critical: {self.critical_count}, Warning: {self.warning_count})",
        ]

        if self.repaired_count > 0 or self.repair_failed_count > 0:
            lines.append(f"Repaired: {self.repaired_count}, Failed: {self.repair_failed_count}")

        return "\n".join(lines)
