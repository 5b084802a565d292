"""Snapshot capture.

Saving is the only way snapshots are created: the canary is put in place
first so that every snapshot carries it, then each family's live ruleset
is captured and written whole.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fwguard.core.audit import AuditEventType, AuditLogger, AuditResult
from fwguard.core.config import SnapshotConfig
from fwguard.core.output import Console
from fwguard.services.canary import CANARY_FAMILY, CanaryProbe
from fwguard.services.packet_filter import Family, PacketFilter
from fwguard.services.state_store import StateStore


@dataclass
class SaveReport:
    canary_inserted: bool = False
    written: dict[Family, Path] = field(default_factory=dict)
    sets_path: Optional[Path] = None


class SnapshotSaver:
    """Captures live state into the snapshot store."""

    def __init__(
        self,
        packet_filter: PacketFilter,
        store: StateStore,
        canary: CanaryProbe,
        audit: AuditLogger,
        console: Console,
    ) -> None:
        self.packet_filter = packet_filter
        self.store = store
        self.canary = canary
        self.audit = audit
        self.console = console

    def save_all(self, config: SnapshotConfig) -> SaveReport:
        """Ensure the canary, then save every configured family (and sets).

        Raises:
            ProbeError: If the canary cannot be checked
            FirewallError: If the canary cannot be inserted or state captured
            SnapshotError: If a snapshot cannot be written
        """
        report = SaveReport()

        report.canary_inserted = self.canary.ensure()
        if report.canary_inserted:
            self.console.info(f"Canary inserted: {self.canary.rule}")
            self.audit.record(
                AuditEventType.CANARY_INSERT,
                AuditResult.SUCCESS,
                target=CANARY_FAMILY.value,
                position=self.canary.config.position,
            )
        else:
            self.console.verbose("Canary already present")

        if config.sets_enabled:
            # Sets first, matching restore order
            report.sets_path = self.store.save_sets(self.packet_filter.save_sets())
            self._record(report.sets_path, "sets")

        for name in config.families:
            family = Family(name)
            content = self.packet_filter.save(family)
            report.written[family] = self.store.save(family, content)
            self._record(report.written[family], family.value)

        return report

    def _record(self, path: Path, target: str) -> None:
        self.console.success(f"Saved {target} snapshot to {path}")
        self.audit.record(
            AuditEventType.SNAPSHOT_SAVE,
            AuditResult.SUCCESS,
            target=target,
            path=path,
        )
