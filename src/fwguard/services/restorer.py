"""Snapshot restore.

Applies stored snapshots to live filter state:
- Sets first (when enabled), because rules may reference set names
- Then each address family, v4 before v6
- Each family is independent: a failed v4 restore does not stop v6

Every restore replaces the family's whole ruleset, so restoring an
already-correct state is a no-op in effect and safe to repeat.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fwguard.core.exceptions import FirewallError, SnapshotError
from fwguard.core.output import Console
from fwguard.services.packet_filter import Family, PacketFilter
from fwguard.services.state_store import StateStore


class RestoreStatus(str, Enum):
    """Outcome of restoring one snapshot."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RestoreOutcome:
    """Result of restoring one family's ruleset."""
    family: Family
    status: RestoreStatus
    cause: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is RestoreStatus.SUCCESS

    def __str__(self) -> str:
        text = f"{self.family.value}: {self.status.value}"
        if self.cause:
            text += f" ({self.cause})"
        return text


@dataclass
class SetRestoreOutcome:
    """Result of restoring the set snapshot."""
    status: RestoreStatus
    cause: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is RestoreStatus.SUCCESS

    @property
    def blocks_rules(self) -> bool:
        """A failed set restore means rule restores must not be attempted."""
        return self.status is RestoreStatus.FAILED


@dataclass
class RestoreReport:
    """All outcomes of one restore pass."""
    sets: Optional[SetRestoreOutcome]
    families: list[RestoreOutcome]

    @property
    def failed(self) -> list[RestoreOutcome]:
        return [o for o in self.families if o.status is RestoreStatus.FAILED]

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.families) and (
            self.sets is None or not self.sets.blocks_rules
        )


class Restorer:
    """Applies stored snapshots to the live packet filter."""

    def __init__(
        self,
        packet_filter: PacketFilter,
        store: StateStore,
        console: Console,
    ) -> None:
        self.packet_filter = packet_filter
        self.store = store
        self.console = console

    def restore(self, family: Family) -> RestoreOutcome:
        """Restore one family from its snapshot. Never raises for restore failures."""
        try:
            snapshot = self.store.load(family)
        except SnapshotError as e:
            self.console.error(f"{family.value} restore failed: {e}")
            return RestoreOutcome(family, RestoreStatus.FAILED, str(e))

        try:
            self.packet_filter.load(family, snapshot.content)
        except FirewallError as e:
            cause = "; ".join([e.message] + e.details)
            self.console.error(f"{family.value} restore failed: {cause}")
            return RestoreOutcome(family, RestoreStatus.FAILED, cause)

        self.console.success(f"{family.value} rules restored from {snapshot.path}")
        return RestoreOutcome(family, RestoreStatus.SUCCESS)

    def restore_sets(self) -> SetRestoreOutcome:
        """Restore named sets. A missing set snapshot is skipped, not failed."""
        try:
            snapshot = self.store.load_sets()
        except SnapshotError as e:
            self.console.error(f"Set restore failed: {e}")
            return SetRestoreOutcome(RestoreStatus.FAILED, str(e))

        if snapshot is None:
            cause = f"no set snapshot at {self.store.sets_path}"
            self.console.warn(f"Set restore skipped: {cause}")
            return SetRestoreOutcome(RestoreStatus.SKIPPED, cause)

        try:
            self.packet_filter.load_sets(snapshot.content)
        except FirewallError as e:
            cause = "; ".join([e.message] + e.details)
            self.console.error(f"Set restore failed: {cause}")
            return SetRestoreOutcome(RestoreStatus.FAILED, cause)

        self.console.success(f"Sets restored from {snapshot.path}")
        return SetRestoreOutcome(RestoreStatus.SUCCESS)

    def restore_all(
        self,
        families: list[Family],
        *,
        sets_enabled: bool = False,
    ) -> RestoreReport:
        """Restore sets (if enabled) and then every family in order.

        If the set restore fails, no rule restore is attempted and every
        family is reported as skipped.
        """
        sets_outcome = None
        if sets_enabled:
            sets_outcome = self.restore_sets()
            if sets_outcome.blocks_rules:
                cause = "set restore failed"
                self.console.warn(f"Rule restore skipped: {cause}")
                return RestoreReport(
                    sets=sets_outcome,
                    families=[
                        RestoreOutcome(f, RestoreStatus.SKIPPED, cause)
                        for f in families
                    ],
                )

        outcomes = [self.restore(family) for family in families]
        return RestoreReport(sets=sets_outcome, families=outcomes)
