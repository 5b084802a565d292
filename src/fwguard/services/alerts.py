"""Alert decisions and delivery.

AlertSink decides whether a cycle's result warrants telling an operator
and formats the report. Only true error conditions alert; a cycle that
detected drift and healed it is logged, not mailed.

MailTransport hands a report to the local mail command. Delivery failures
are raised once and never retried here.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from jinja2 import Environment, PackageLoader, select_autoescape

from fwguard.core.exceptions import AlertDeliveryError, ExecutionError
from fwguard.core.executor import CommandExecutor
from fwguard.services.result import IssueKind, ReconciliationResult, Severity


jinja_env = Environment(
    loader=PackageLoader("fwguard", "templates"),
    autoescape=select_autoescape(),
    trim_blocks=True,
    lstrip_blocks=True,
)

SEVERITY_WORDING = {
    Severity.WARNING: "WARNING",
    Severity.ERROR: "ERROR",
    Severity.CRITICAL: "CRITICAL",
}


@dataclass
class Report:
    """A formatted alert ready for delivery."""
    subject: str
    body: str
    severity: Severity


class AlertSink:
    """Decides on and formats alert reports."""

    def __init__(
        self,
        *,
        subject_prefix: str = "[fwguard]",
        auxiliary_service: Optional[str] = None,
        rules_v4: Optional[Path] = None,
        rules_v6: Optional[Path] = None,
        audit_log: Optional[Path] = None,
    ) -> None:
        self.subject_prefix = subject_prefix
        self.auxiliary_service = auxiliary_service
        self.rules_v4 = rules_v4
        self.rules_v6 = rules_v6
        self.audit_log = audit_log

    def decide(self, result: ReconciliationResult) -> Optional[Report]:
        """Return a report if the cycle hit an alerting condition, else None."""
        alerting = [i for i in result.issues if i.kind.alerts]
        if not alerting:
            return None

        severity = max(i.severity for i in alerting)
        post_bounce_flush = IssueKind.POST_BOUNCE_FLUSH in result.kinds

        if post_bounce_flush:
            headline = "firewall flushed again after service restart"
        elif len(alerting) == 1:
            headline = alerting[0].kind.value
        else:
            headline = f"{len(alerting)} errors"

        subject = (
            f"{self.subject_prefix} {SEVERITY_WORDING[severity]}: "
            f"{headline} on {result.hostname}"
        )

        template = jinja_env.get_template("alert.txt.j2")
        body = template.render(
            hostname=result.hostname,
            started_at=result.started_at.isoformat(timespec="seconds"),
            severity=SEVERITY_WORDING[severity],
            post_bounce_flush=post_bounce_flush,
            auxiliary=self.auxiliary_service,
            errors=alerting,
            warnings=[i for i in result.issues if not i.kind.alerts],
            canary_before=_describe(result.canary_before),
            outcomes=result.restore.families if result.restore else [],
            sets=result.restore.sets if result.restore else None,
            canary_after_restore=_describe(result.canary_after_restore),
            bounce=_describe_bounce(result.bounce_ok),
            canary_after_bounce=_describe(result.canary_after_bounce),
            rules_v4=self.rules_v4,
            rules_v6=self.rules_v6,
            audit_log=self.audit_log,
        )

        return Report(subject=subject, body=body, severity=severity)


class MailTransport:
    """Delivers reports with the local mail command (mail -s SUBJECT RCPT)."""

    def __init__(self, executor: CommandExecutor, mail_command: str = "mail") -> None:
        self.executor = executor
        self.mail_command = mail_command

    def send(self, report: Report, recipient: str) -> None:
        """Hand a report to the mail system.

        Raises:
            AlertDeliveryError: If the mail command fails or is missing
        """
        try:
            self.executor.run(
                [self.mail_command, "-s", report.subject, recipient],
                input=report.body,
                description=f"Sending alert to {recipient}",
                timeout=60,
            )
        except ExecutionError as e:
            raise AlertDeliveryError(
                f"Could not deliver alert to {recipient}",
                details=e.details,
                hint=f"Check that '{self.mail_command}' works: "
                     f"echo test | {self.mail_command} -s test {recipient}",
            ) from e


def _describe(value: Optional[bool]) -> str:
    if value is None:
        return "not checked"
    return "present" if value else "ABSENT"


def _describe_bounce(value: Optional[bool]) -> Optional[str]:
    if value is None:
        return None
    return "ok" if value else "FAILED"
