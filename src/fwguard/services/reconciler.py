"""Reconciliation cycle.

One cycle:
    probe -> gate -> restore -> verify -> bounce -> re-verify -> report

A cycle whose initial probe finds the canary skips straight to
supervision and reporting. Every step records its failures into the
cycle's ReconciliationResult and the cycle carries on, so a failed v6
restore never prevents the v4 restore, the bounce or the alert.

Cycles never overlap: run_cycle() holds an exclusive lock on lock_path for
its whole duration and drops a trigger that finds the lock taken.
"""

import fcntl
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from fwguard.core.audit import (
    AuditEventType,
    AuditLogger,
    AuditResult,
    configure_audit_logger,
)
from fwguard.core.config import AppConfig
from fwguard.core.context import ExecutionContext
from fwguard.core.exceptions import (
    AlertDeliveryError,
    ExecutionError,
    FwGuardError,
    PrerequisiteError,
    ProbeError,
    ServiceError,
)
from fwguard.core.executor import CommandExecutor
from fwguard.core.output import Console
from fwguard.services.alerts import AlertSink, MailTransport
from fwguard.services.canary import CANARY_FAMILY, CanaryProbe
from fwguard.services.gate import DependencyGate
from fwguard.services.packet_filter import Family, IptablesFilter, PacketFilter
from fwguard.services.restorer import Restorer, RestoreStatus
from fwguard.services.result import IssueKind, ReconciliationResult
from fwguard.services.state_store import StateStore
from fwguard.services.supervisor import SelfSupervisor
from fwguard.services.systemd import SystemdService


class CycleState(str, Enum):
    IDLE = "idle"
    GATING = "gating"
    RESTORING = "restoring"
    VERIFYING = "verifying"
    BOUNCING = "bouncing"
    REVERIFYING = "re-verifying"
    REPORTING = "reporting"


class CycleLock:
    """Non-blocking exclusive flock on a lock file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._fd: Optional[int] = None

    def acquire(self) -> bool:
        """Take the lock.

        Returns:
            True if taken, False if another process holds it

        Raises:
            OSError: If the lock file cannot be opened
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        self._fd = fd
        return True

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None


class Reconciler:
    """Runs reconciliation cycles."""

    def __init__(
        self,
        ctx: ExecutionContext,
        config: AppConfig,
        *,
        canary: CanaryProbe,
        restorer: Restorer,
        gate: DependencyGate,
        systemd: SystemdService,
        supervisor: SelfSupervisor,
        alert_sink: AlertSink,
        transport: MailTransport,
        audit: AuditLogger,
    ) -> None:
        self.ctx = ctx
        self.config = config
        self.canary = canary
        self.restorer = restorer
        self.gate = gate
        self.systemd = systemd
        self.supervisor = supervisor
        self.alert_sink = alert_sink
        self.transport = transport
        self.audit = audit

        self.state = CycleState.IDLE

    @property
    def console(self) -> Console:
        return self.ctx.console

    def run_cycle(self) -> Optional[ReconciliationResult]:
        """Run one cycle under the cycle lock.

        Returns:
            The cycle's result, or None if another cycle was running

        Raises:
            PrerequisiteError: If the lock file cannot be opened
        """
        lock = CycleLock(self.config.config.lock_path)
        try:
            acquired = lock.acquire()
        except OSError as e:
            if not self.ctx.dry_run:
                raise PrerequisiteError(
                    f"Cannot open lock file {lock.path}",
                    hint="Run as root",
                    details=[str(e)],
                ) from e
            self.console.debug(f"Dry run without cycle lock: {e}")
            acquired = True

        if not acquired:
            self.console.warn("Another reconciliation cycle is running, skipping")
            self.audit.record(
                AuditEventType.CYCLE_SKIPPED,
                AuditResult.SKIPPED,
                "another cycle holds the lock",
                target=str(lock.path),
            )
            return None

        try:
            with self.audit.correlation("cycle"):
                return self._run()
        finally:
            lock.release()
            self.state = CycleState.IDLE

    # =========================================================================
    # Steps
    # =========================================================================

    def _run(self) -> ReconciliationResult:
        result = ReconciliationResult(hostname=self.config.hostname)
        self.audit.record(
            AuditEventType.CYCLE_START,
            AuditResult.DRY_RUN if self.ctx.dry_run else AuditResult.SUCCESS,
            target=result.hostname,
        )

        result.canary_before = self._probe(result, "at cycle start")

        if result.canary_before:
            self.console.info("Canary present, no drift detected")
            self.audit.record(AuditEventType.DRIFT_NONE, AuditResult.SUCCESS, "no drift detected")
        else:
            if result.canary_before is False:
                self.console.warn("Canary absent, firewall drift detected")
                message = "canary absent"
            else:
                self.console.warn("Canary state unknown, restoring anyway")
                message = "canary state unknown"
            self.audit.record(AuditEventType.DRIFT_DETECTED, AuditResult.WARNING, message)

            self._gate(result)
            self._restore(result)
            self._verify(result)
            if self._bounce(result):
                self._reverify(result)

        self._supervise(result)
        self._report(result)
        return result

    def _probe(self, result: ReconciliationResult, when: str) -> Optional[bool]:
        try:
            return self.canary.present()
        except ProbeError as e:
            cause = "; ".join([e.message] + e.details)
            self.console.error(f"Canary probe failed ({when}): {cause}")
            result.add(IssueKind.PROBE_ERROR, f"{when}: {cause}")
            return None

    def _gate(self, result: ReconciliationResult) -> None:
        self.state = CycleState.GATING
        gate = self.config.gate

        if not gate.service:
            self.console.verbose("No dependency gate configured")
            return

        result.gate_stable = self.gate.await_stable(
            gate.service,
            gate.poll_interval,
            gate.max_wait,
            gate.settle_delay,
        )
        if result.gate_stable:
            self.audit.record(
                AuditEventType.DEPENDENCY_STABLE,
                AuditResult.SUCCESS,
                target=gate.service,
            )
        else:
            result.add(
                IssueKind.DEPENDENCY_TIMEOUT,
                f"{gate.service} not active after {gate.max_wait:g}s",
            )
            self.audit.record(
                AuditEventType.DEPENDENCY_TIMEOUT,
                AuditResult.WARNING,
                "restoring anyway",
                target=gate.service,
                max_wait=gate.max_wait,
            )

    def _restore(self, result: ReconciliationResult) -> None:
        self.state = CycleState.RESTORING
        snapshots = self.config.snapshots

        report = self.restorer.restore_all(
            [Family(f) for f in snapshots.families],
            sets_enabled=snapshots.sets_enabled,
        )
        result.restore = report

        if report.sets is not None:
            if report.sets.status is RestoreStatus.FAILED:
                result.add(IssueKind.SET_RESTORE_FAILED, report.sets.cause or "set restore failed")
                audit_result = AuditResult.FAILURE
            elif report.sets.status is RestoreStatus.SKIPPED:
                result.add(IssueKind.SET_RESTORE_SKIPPED, report.sets.cause or "no set snapshot")
                audit_result = AuditResult.WARNING
            else:
                audit_result = AuditResult.SUCCESS
            self.audit.record(
                AuditEventType.SETS_RESTORE,
                audit_result,
                error=report.sets.cause,
            )

        for outcome in report.families:
            if outcome.status is RestoreStatus.FAILED:
                result.add(
                    IssueKind.RESTORE_FAILED,
                    outcome.cause or "restore failed",
                    family=outcome.family,
                )
                audit_result = AuditResult.FAILURE
            elif outcome.status is RestoreStatus.SKIPPED:
                audit_result = AuditResult.SKIPPED
            else:
                audit_result = AuditResult.SUCCESS
            self.audit.record(
                AuditEventType.RULES_RESTORE,
                audit_result,
                target=outcome.family.value,
                error=outcome.cause,
            )

        if report.ok:
            self.console.success("Rules restored successfully")
            self.audit.record(
                AuditEventType.RULES_RESTORE,
                AuditResult.DRY_RUN if self.ctx.dry_run else AuditResult.SUCCESS,
                "rules restored successfully",
                target=",".join(o.family.value for o in report.families),
            )

    def _verify(self, result: ReconciliationResult) -> None:
        self.state = CycleState.VERIFYING

        if self.ctx.dry_run:
            self.console.dry_run_msg("Re-check canary after restore")
            self.audit.record(AuditEventType.CANARY_VERIFY, AuditResult.DRY_RUN)
            return

        result.canary_after_restore = self._probe(result, "after restore")

        if result.canary_after_restore is None:
            self.audit.record(AuditEventType.CANARY_VERIFY, AuditResult.FAILURE, "probe failed")
        elif result.canary_after_restore:
            self.console.success("Canary present after restore")
            self.audit.record(AuditEventType.CANARY_VERIFY, AuditResult.SUCCESS)
        else:
            # A failed restore of the canary's family is already recorded
            outcome = result.outcome_for(CANARY_FAMILY)
            if outcome is not None and outcome.ok:
                result.add(
                    IssueKind.RESTORE_UNVERIFIED,
                    "canary absent after a successful restore",
                    family=CANARY_FAMILY,
                )
            self.console.error("Canary absent after restore")
            self.audit.record(AuditEventType.CANARY_VERIFY, AuditResult.FAILURE, "canary absent")

    def _bounce(self, result: ReconciliationResult) -> bool:
        """Restart the auxiliary service if it is active.

        Returns:
            True if a restart was attempted
        """
        service = self.config.auxiliary.service
        if not service:
            return False

        try:
            active = self.systemd.is_active(service)
        except ExecutionError as e:
            cause = "; ".join([f"Cannot tell whether {service} is active", e.message] + e.details)
            self.console.error(cause)
            result.add(IssueKind.AUXILIARY_RESTART_FAILED, cause)
            self.audit.record(
                AuditEventType.SERVICE_RESTART,
                AuditResult.FAILURE,
                "not restarted",
                target=service,
                error=cause,
            )
            return False

        if not active:
            self.console.verbose(f"{service} not active, no restart needed")
            return False

        self.state = CycleState.BOUNCING
        try:
            self.systemd.restart(service, description=f"Restarting {service} to rebuild its chains")
        except ServiceError as e:
            result.bounce_ok = False
            cause = "; ".join([e.message] + e.details)
            self.console.error(cause)
            result.add(IssueKind.AUXILIARY_RESTART_FAILED, cause)
            self.audit.record(
                AuditEventType.SERVICE_RESTART,
                AuditResult.FAILURE,
                target=service,
                error=cause,
            )
        else:
            result.bounce_ok = True
            self.audit.record(
                AuditEventType.SERVICE_RESTART,
                AuditResult.DRY_RUN if self.ctx.dry_run else AuditResult.SUCCESS,
                target=service,
            )
        return True

    def _reverify(self, result: ReconciliationResult) -> None:
        self.state = CycleState.REVERIFYING
        service = self.config.auxiliary.service

        if self.ctx.dry_run:
            self.console.dry_run_msg(f"Re-check canary after restarting {service}")
            self.audit.record(AuditEventType.CANARY_POST_BOUNCE, AuditResult.DRY_RUN)
            return

        result.canary_after_bounce = self._probe(result, f"after restarting {service}")

        if result.canary_after_bounce is False and result.canary_after_restore:
            message = f"canary removed while {service} restarted"
            self.console.error(f"Firewall flushed again: {message}")
            result.add(IssueKind.POST_BOUNCE_FLUSH, message)
            self.audit.record(
                AuditEventType.CANARY_POST_BOUNCE,
                AuditResult.FAILURE,
                message,
                target=service,
            )
        elif result.canary_after_bounce:
            self.audit.record(AuditEventType.CANARY_POST_BOUNCE, AuditResult.SUCCESS, target=service)
        else:
            self.audit.record(AuditEventType.CANARY_POST_BOUNCE, AuditResult.WARNING, target=service)

    def _supervise(self, result: ReconciliationResult) -> None:
        if not self.config.supervision.enabled:
            return

        try:
            for unit in self.supervisor.ensure_registered():
                self.audit.record(
                    AuditEventType.SUPERVISION_REGISTER,
                    AuditResult.DRY_RUN if self.ctx.dry_run else AuditResult.SUCCESS,
                    target=unit,
                )
        except (FwGuardError, OSError) as e:
            self._supervision_failed(result, AuditEventType.SUPERVISION_REGISTER, e)

        try:
            for unit in self.supervisor.ensure_running():
                self.audit.record(
                    AuditEventType.SUPERVISION_START,
                    AuditResult.DRY_RUN if self.ctx.dry_run else AuditResult.SUCCESS,
                    target=unit,
                )
        except (FwGuardError, OSError) as e:
            self._supervision_failed(result, AuditEventType.SUPERVISION_START, e)

        try:
            result.supervision = self.supervisor.status()
        except ExecutionError as e:
            self.console.debug(f"Cannot read supervision status: {e}")

    def _supervision_failed(
        self,
        result: ReconciliationResult,
        event_type: AuditEventType,
        error: Exception,
    ) -> None:
        cause = str(error)
        if isinstance(error, FwGuardError) and error.details:
            cause = "; ".join([error.message] + error.details)
        self.console.error(f"Self-supervision failed: {cause}")
        result.add(IssueKind.SUPERVISION_FAILED, cause)
        self.audit.record(event_type, AuditResult.FAILURE, error=cause)

    def _report(self, result: ReconciliationResult) -> None:
        self.state = CycleState.REPORTING
        alerts = self.config.alerts

        report = self.alert_sink.decide(result)
        if report is not None and not alerts.enabled:
            self.console.warn("Alerts are disabled, not sending report")
            report = None

        if report is not None:
            recipient = self.config.alert_recipient
            try:
                self.transport.send(report, recipient)
            except AlertDeliveryError as e:
                cause = "; ".join([e.message] + e.details)
                self.console.error(cause)
                result.add(IssueKind.ALERT_DELIVERY_FAILED, cause)
                self.audit.record(
                    AuditEventType.ALERT_FAILED,
                    AuditResult.FAILURE,
                    report.subject,
                    target=recipient,
                    error=cause,
                )
            else:
                result.alerted = True
                self.console.info(f"Alert sent to {recipient}")
                self.audit.record(
                    AuditEventType.ALERT_SENT,
                    AuditResult.DRY_RUN if self.ctx.dry_run else AuditResult.SUCCESS,
                    report.subject,
                    target=recipient,
                )

        result.finished_at = datetime.now(timezone.utc)

        if self.ctx.dry_run:
            end_result = AuditResult.DRY_RUN
        elif result.has_errors:
            end_result = AuditResult.FAILURE
        else:
            end_result = AuditResult.SUCCESS
        self.audit.record(AuditEventType.CYCLE_END, end_result, result.summary())


def build_reconciler(ctx: ExecutionContext) -> Reconciler:
    """Wire a Reconciler with the real collaborators for this host."""
    config = ctx.config
    executor = CommandExecutor(ctx)
    packet_filter: PacketFilter = IptablesFilter(ctx, executor)
    systemd = SystemdService(ctx, executor)
    store = StateStore(ctx, executor, config.snapshots)

    audit = configure_audit_logger(
        log_path=config.audit.log_path,
        max_size_mb=config.audit.max_size_mb,
        backup_count=config.audit.backup_count,
    )

    return Reconciler(
        ctx,
        config,
        canary=CanaryProbe(packet_filter, config.canary),
        restorer=Restorer(packet_filter, store, ctx.console),
        gate=DependencyGate(systemd, ctx.console),
        systemd=systemd,
        supervisor=SelfSupervisor(
            ctx,
            systemd,
            config.supervision,
            dependency=config.gate.service,
        ),
        alert_sink=AlertSink(
            subject_prefix=config.alerts.subject_prefix,
            auxiliary_service=config.auxiliary.service,
            rules_v4=config.snapshots.rules_v4,
            rules_v6=config.snapshots.rules_v6,
            audit_log=config.audit.log_path,
        ),
        transport=MailTransport(executor, config.alerts.mail_command),
        audit=audit,
    )
