"""Packet filter access.

The live filter state is a host-wide mutable resource. Every component
receives a PacketFilter handle instead of shelling out on its own, so
that filter access has one seam that can be replaced in tests.

IptablesFilter implements the handle with iptables/ip6tables and ipset:
- save:   iptables-save / ip6tables-save
- load:   iptables-restore --test, then iptables-restore (atomic per table)
- query:  iptables -w SECONDS -C
- insert: iptables -w SECONDS -I
- sets:   ipset save / ipset restore -exist

Every command is bounded: iptables waits at most XTABLES_WAIT seconds for
the xtables lock and each command runs under a timeout.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fwguard.core.context import ExecutionContext
from fwguard.core.executor import CommandExecutor
from fwguard.core.exceptions import ExecutionError, FirewallError, ProbeError


class Family(str, Enum):
    """Address family of a ruleset."""
    V4 = "v4"
    V6 = "v6"


@dataclass(frozen=True)
class FamilyCommands:
    """Binaries that operate on one address family."""
    tables: str
    save: str
    restore: str


FAMILY_COMMANDS: dict[Family, FamilyCommands] = {
    Family.V4: FamilyCommands("iptables", "iptables-save", "iptables-restore"),
    Family.V6: FamilyCommands("ip6tables", "ip6tables-save", "ip6tables-restore"),
}

# iptables -C exits 1 when no matching rule exists
IPTABLES_RULE_ABSENT = 1

# Seconds iptables waits for the xtables lock before giving up
XTABLES_WAIT = 10

# Per-command bounds; the restore bound covers the xtables wait plus the commit
QUERY_TIMEOUT = 20
RESTORE_TIMEOUT = 60


@dataclass(frozen=True)
class RuleSpec:
    """A single filter rule identified by chain, source, action and comment."""
    chain: str
    action: str
    source: Optional[str] = None
    comment: Optional[str] = None

    def to_iptables_args(self) -> list[str]:
        """Convert the rule to iptables match/target arguments (no chain)."""
        args = []
        if self.source:
            args.extend(["-s", self.source])
        if self.comment:
            args.extend(["-m", "comment", "--comment", self.comment])
        args.extend(["-j", self.action])
        return args

    def __str__(self) -> str:
        parts = [self.action]
        if self.source:
            parts.append(f"from {self.source}")
        parts.append(f"[{self.chain}]")
        if self.comment:
            parts.append(f"({self.comment})")
        return " ".join(parts)


class PacketFilter(ABC):
    """Handle on the live packet-filter state."""

    @abstractmethod
    def save(self, family: Family) -> str:
        """Capture the complete live ruleset of one family.

        Raises:
            FirewallError: If the ruleset cannot be captured
        """

    @abstractmethod
    def load(self, family: Family, content: str) -> None:
        """Replace the live ruleset of one family.

        Either the whole ruleset is replaced or live state is untouched.

        Raises:
            FirewallError: If the content is rejected or cannot be applied
        """

    @abstractmethod
    def query(self, family: Family, rule: RuleSpec) -> bool:
        """Check for an exact match of a rule. Never mutates state.

        Raises:
            ProbeError: If live state cannot be queried
        """

    @abstractmethod
    def insert(self, family: Family, rule: RuleSpec, position: int = 1) -> None:
        """Insert a rule at a 1-based position in its chain.

        Raises:
            FirewallError: If the rule cannot be inserted
        """

    @abstractmethod
    def save_sets(self) -> str:
        """Capture named-set definitions and membership.

        Raises:
            FirewallError: If the sets cannot be captured
        """

    @abstractmethod
    def load_sets(self, content: str) -> None:
        """Create/refresh named sets from a set snapshot.

        Raises:
            FirewallError: If the sets cannot be restored
        """


class IptablesFilter(PacketFilter):
    """PacketFilter backed by iptables, ip6tables and ipset."""

    def __init__(
        self,
        ctx: ExecutionContext,
        executor: CommandExecutor,
        *,
        query_timeout: float = QUERY_TIMEOUT,
        restore_timeout: float = RESTORE_TIMEOUT,
    ) -> None:
        self.ctx = ctx
        self.executor = executor
        self.query_timeout = query_timeout
        self.restore_timeout = restore_timeout

    @property
    def _wait(self) -> list[str]:
        return ["-w", str(XTABLES_WAIT)]

    def save(self, family: Family) -> str:
        cmd = FAMILY_COMMANDS[family].save
        try:
            result = self.executor.run([cmd], mutating=False, timeout=self.query_timeout)
        except ExecutionError as e:
            raise FirewallError(
                f"Could not capture {family.value} ruleset",
                family=family.value,
                details=[e.message] + e.details,
            ) from e
        return result.stdout

    def load(self, family: Family, content: str) -> None:
        cmd = FAMILY_COMMANDS[family].restore

        # Validate the whole snapshot first; a rejected snapshot leaves
        # live state untouched
        try:
            self.executor.run(
                [cmd, "--test"],
                input=content,
                mutating=False,
                timeout=self.restore_timeout,
            )
        except ExecutionError as e:
            raise FirewallError(
                f"{family.value} snapshot rejected by {cmd} --test",
                family=family.value,
                hint="Sets referenced by the rules may be missing",
                details=[e.message] + e.details,
            ) from e

        try:
            self.executor.run(
                [cmd] + self._wait,
                input=content,
                description=f"Applying {family.value} ruleset",
                timeout=self.restore_timeout,
            )
        except ExecutionError as e:
            raise FirewallError(
                f"Could not apply {family.value} ruleset",
                family=family.value,
                details=[e.message] + e.details,
            ) from e

    def query(self, family: Family, rule: RuleSpec) -> bool:
        cmd = [FAMILY_COMMANDS[family].tables] + self._wait + ["-C", rule.chain]
        cmd += rule.to_iptables_args()

        try:
            result = self.executor.run(
                cmd, check=False, mutating=False, timeout=self.query_timeout
            )
        except ExecutionError as e:
            raise ProbeError(
                f"Cannot query {family.value} filter state",
                details=[e.message] + e.details,
            ) from e

        if result.return_code == 0:
            return True
        if result.return_code == IPTABLES_RULE_ABSENT:
            return False

        details = [f"Exit code: {result.return_code}"]
        if result.stderr.strip():
            details.append(result.stderr.strip())
        raise ProbeError(
            f"Cannot query {family.value} filter state",
            details=details,
        )

    def insert(self, family: Family, rule: RuleSpec, position: int = 1) -> None:
        cmd = [FAMILY_COMMANDS[family].tables] + self._wait + ["-I", rule.chain, str(position)]
        cmd += rule.to_iptables_args()

        try:
            self.executor.run(
                cmd,
                description=f"Inserting rule: {rule}",
                timeout=self.query_timeout,
            )
        except ExecutionError as e:
            raise FirewallError(
                f"Could not insert rule: {rule}",
                family=family.value,
                details=[e.message] + e.details,
            ) from e

    def save_sets(self) -> str:
        try:
            result = self.executor.run(
                ["ipset", "save"], mutating=False, timeout=self.query_timeout
            )
        except ExecutionError as e:
            raise FirewallError(
                "Could not capture ipsets",
                details=[e.message] + e.details,
            ) from e
        return result.stdout

    def load_sets(self, content: str) -> None:
        try:
            self.executor.run(
                ["ipset", "restore", "-exist"],
                input=content,
                description="Restoring ipsets",
                timeout=self.restore_timeout,
            )
        except ExecutionError as e:
            raise FirewallError(
                "Could not restore ipsets",
                details=[e.message] + e.details,
            ) from e
