"""Per-cycle result records.

A ReconciliationResult is created fresh for every cycle, filled in by the
Reconciler step by step, and consumed by the AlertSink and the audit log.
It is never persisted beyond the log.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Optional

from fwguard.services.packet_filter import Family
from fwguard.services.restorer import RestoreOutcome, RestoreReport


class Severity(IntEnum):
    WARNING = 1
    ERROR = 2
    CRITICAL = 3


class IssueKind(str, Enum):
    """Everything that can go wrong, or merely be noteworthy, in a cycle."""
    PROBE_ERROR = "ProbeError"
    RESTORE_FAILED = "RestoreFailed"
    SET_RESTORE_FAILED = "SetRestoreFailed"
    SET_RESTORE_SKIPPED = "SetRestoreSkipped"
    DEPENDENCY_TIMEOUT = "DependencyTimeout"
    RESTORE_UNVERIFIED = "RestoreUnverified"
    AUXILIARY_RESTART_FAILED = "AuxiliaryServiceRestartFailed"
    POST_BOUNCE_FLUSH = "PostBounceFlush"
    SUPERVISION_FAILED = "SupervisionFailed"
    ALERT_DELIVERY_FAILED = "AlertDeliveryFailed"

    @property
    def severity(self) -> Severity:
        return ISSUE_SEVERITY[self]

    @property
    def alerts(self) -> bool:
        """Whether this kind is reported to the operator."""
        return self in ALERTING_KINDS


ISSUE_SEVERITY: dict[IssueKind, Severity] = {
    IssueKind.PROBE_ERROR: Severity.ERROR,
    IssueKind.RESTORE_FAILED: Severity.ERROR,
    IssueKind.SET_RESTORE_FAILED: Severity.ERROR,
    IssueKind.SET_RESTORE_SKIPPED: Severity.WARNING,
    IssueKind.DEPENDENCY_TIMEOUT: Severity.WARNING,
    IssueKind.RESTORE_UNVERIFIED: Severity.ERROR,
    IssueKind.AUXILIARY_RESTART_FAILED: Severity.ERROR,
    IssueKind.POST_BOUNCE_FLUSH: Severity.CRITICAL,
    IssueKind.SUPERVISION_FAILED: Severity.ERROR,
    IssueKind.ALERT_DELIVERY_FAILED: Severity.ERROR,
}

ALERTING_KINDS = frozenset({
    IssueKind.PROBE_ERROR,
    IssueKind.RESTORE_FAILED,
    IssueKind.SET_RESTORE_FAILED,
    IssueKind.RESTORE_UNVERIFIED,
    IssueKind.AUXILIARY_RESTART_FAILED,
    IssueKind.POST_BOUNCE_FLUSH,
    IssueKind.SUPERVISION_FAILED,
})


@dataclass
class CycleIssue:
    """One typed condition recorded during a cycle."""
    kind: IssueKind
    message: str
    family: Optional[Family] = None

    @property
    def severity(self) -> Severity:
        return self.kind.severity

    @property
    def is_error(self) -> bool:
        return self.severity >= Severity.ERROR

    def __str__(self) -> str:
        label = self.kind.value
        if self.family is not None:
            label += f"({self.family.value})"
        return f"{label}: {self.message}"


@dataclass
class SupervisionStatus:
    """Registered-for-boot / currently-running state of one trigger unit."""
    unit: str
    registered: bool
    running: bool

    @property
    def healthy(self) -> bool:
        return self.registered and self.running


@dataclass
class ReconciliationResult:
    """Record of one reconciliation cycle."""
    hostname: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    # None means the probe itself failed
    canary_before: Optional[bool] = None
    gate_stable: Optional[bool] = None
    restore: Optional[RestoreReport] = None
    canary_after_restore: Optional[bool] = None
    # None means no bounce was attempted
    bounce_ok: Optional[bool] = None
    canary_after_bounce: Optional[bool] = None

    supervision: list[SupervisionStatus] = field(default_factory=list)
    issues: list[CycleIssue] = field(default_factory=list)
    alerted: bool = False

    def add(
        self,
        kind: IssueKind,
        message: str,
        family: Optional[Family] = None,
    ) -> CycleIssue:
        issue = CycleIssue(kind, message, family)
        self.issues.append(issue)
        return issue

    @property
    def errors(self) -> list[CycleIssue]:
        return [i for i in self.issues if i.is_error]

    @property
    def warnings(self) -> list[CycleIssue]:
        return [i for i in self.issues if not i.is_error]

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def kinds(self) -> set[IssueKind]:
        return {i.kind for i in self.issues}

    @property
    def drift_detected(self) -> bool:
        """Canary was not confirmed present at cycle start."""
        return self.canary_before is not True

    @property
    def healed(self) -> bool:
        """Drift was detected and the cycle ended without errors."""
        return self.drift_detected and not self.has_errors

    def outcome_for(self, family: Family) -> Optional[RestoreOutcome]:
        if self.restore is None:
            return None
        for outcome in self.restore.families:
            if outcome.family is family:
                return outcome
        return None

    def summary(self) -> str:
        """One-line summary for the audit log."""
        parts = [
            f"canary_before={_tri(self.canary_before)}",
        ]
        if self.restore is not None:
            if self.restore.sets is not None:
                parts.append(f"sets={self.restore.sets.status.value}")
            for outcome in self.restore.families:
                parts.append(f"{outcome.family.value}={outcome.status.value}")
            parts.append(f"canary_after={_tri(self.canary_after_restore)}")
        if self.bounce_ok is not None:
            parts.append(f"bounce={'ok' if self.bounce_ok else 'failed'}")
            parts.append(f"canary_post_bounce={_tri(self.canary_after_bounce)}")
        kinds = sorted(i.kind.value for i in self.issues)
        parts.append(f"issues={','.join(kinds) if kinds else 'none'}")
        parts.append(f"alert={'yes' if self.alerted else 'no'}")
        return " ".join(parts)


def _tri(value: Optional[bool]) -> str:
    if value is None:
        return "unknown"
    return "present" if value else "absent"

