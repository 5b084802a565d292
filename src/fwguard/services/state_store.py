"""Snapshot storage.

Persists the last-known-good ruleset per address family, with a backup
copy of the previous snapshot, and optionally a named-set snapshot.

File layout (defaults):
- /etc/iptables/rules.v4, /etc/iptables/rules.v6   primary snapshots
- /var/lib/fwguard/backup/rules.v4.bak, ...        previous snapshots
- /etc/iptables/ipsets                             set snapshot

Snapshots are whole-file replacements, never edited in place.
"""

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fwguard.core.config import SnapshotConfig
from fwguard.core.context import ExecutionContext
from fwguard.core.executor import CommandExecutor
from fwguard.core.exceptions import SnapshotError
from fwguard.services.packet_filter import Family


SNAPSHOT_FILE_MODE = 0o600
BACKUP_SUFFIX = ".bak"


@dataclass(frozen=True)
class RuleSnapshot:
    """Complete saved ruleset of one address family. Content is opaque."""
    family: Family
    content: str
    path: Path


@dataclass(frozen=True)
class SetSnapshot:
    """Saved named-set definitions. Content is opaque."""
    content: str
    path: Path


class StateStore:
    """Reads and writes snapshot files. No policy."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        config: SnapshotConfig,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.config = config

    # =========================================================================
    # Paths
    # =========================================================================

    def snapshot_path(self, family: Family) -> Path:
        if family is Family.V4:
            return self.config.rules_v4
        return self.config.rules_v6

    def backup_path(self, family: Family) -> Path:
        primary = self.snapshot_path(family)
        return self.config.backup_dir / f"{primary.name}{BACKUP_SUFFIX}"

    @property
    def sets_path(self) -> Path:
        return self.config.ipsets

    @property
    def sets_backup_path(self) -> Path:
        return self.config.backup_dir / f"{self.sets_path.name}{BACKUP_SUFFIX}"

    def has_snapshot(self, family: Family) -> bool:
        return self.snapshot_path(family).is_file()

    def has_backup(self, family: Family) -> bool:
        return self.backup_path(family).is_file()

    # =========================================================================
    # Rule snapshots
    # =========================================================================

    def load(self, family: Family) -> RuleSnapshot:
        """Load the snapshot for one family.

        Raises:
            SnapshotError: If the file is missing, unreadable or empty
        """
        path = self.snapshot_path(family)
        content = self._read(path, f"{family.value} snapshot")
        return RuleSnapshot(family=family, content=content, path=path)

    def save(self, family: Family, content: str) -> Path:
        """Replace the snapshot for one family, keeping the previous one as backup.

        Args:
            family: Address family
            content: Output of a successful save of live state

        Returns:
            Path of the written snapshot

        Raises:
            SnapshotError: If content is empty or the file cannot be written
        """
        path = self.snapshot_path(family)
        self._write(path, self.backup_path(family), content, f"{family.value} snapshot")
        return path

    # =========================================================================
    # Set snapshots
    # =========================================================================

    def load_sets(self) -> Optional[SetSnapshot]:
        """Load the set snapshot.

        Returns:
            SetSnapshot, or None if no set snapshot exists

        Raises:
            SnapshotError: If the file exists but is unreadable or empty
        """
        if not self.sets_path.exists():
            return None
        content = self._read(self.sets_path, "set snapshot")
        return SetSnapshot(content=content, path=self.sets_path)

    def save_sets(self, content: str) -> Path:
        """Replace the set snapshot, keeping the previous one as backup."""
        self._write(self.sets_path, self.sets_backup_path, content, "set snapshot")
        return self.sets_path

    # =========================================================================
    # Private Helpers
    # =========================================================================

    def _read(self, path: Path, what: str) -> str:
        if not path.exists():
            raise SnapshotError(
                f"No {what} at {path}",
                hint="Create it with: fwguard save",
            )
        try:
            content = path.read_text()
        except (OSError, UnicodeDecodeError) as e:
            raise SnapshotError(
                f"Cannot read {what} at {path}",
                details=[str(e)],
            ) from e
        if not content.strip():
            raise SnapshotError(
                f"Refusing to use empty {what} at {path}",
                hint="Re-create it with: fwguard save",
            )
        return content

    def _write(self, path: Path, backup: Path, content: str, what: str) -> None:
        if not content.strip():
            raise SnapshotError(
                f"Refusing to save empty {what}",
                hint="Live state is empty; check the firewall before saving",
            )

        try:
            if path.exists():
                if self.ctx.dry_run:
                    self.ctx.console.dry_run_msg(f"Copy {path} to {backup}")
                else:
                    backup.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(path, backup)
                    self.ctx.console.debug(f"Backed up {path} to {backup}")

            self.executor.write_file(
                path,
                content,
                description=f"Writing {what} to {path}",
                permissions=SNAPSHOT_FILE_MODE,
            )
        except OSError as e:
            raise SnapshotError(
                f"Cannot write {what} to {path}",
                details=[str(e)],
            ) from e
