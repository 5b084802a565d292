"""Canary rule probe.

The canary is an inert DROP rule for a TEST-NET source address, tagged with
a fixed comment. It is saved into every snapshot, so:
- canary present  => no flush since the last restore or save
- canary absent   => the ruleset was flushed or replaced
"""

from fwguard.core.config import CanaryConfig
from fwguard.services.packet_filter import Family, PacketFilter, RuleSpec


# The canary source is an IPv4 address, so it lives in the v4 table
CANARY_FAMILY = Family.V4


class CanaryProbe:
    """Checks for, and when saving inserts, the canary rule."""

    def __init__(self, packet_filter: PacketFilter, config: CanaryConfig) -> None:
        self.packet_filter = packet_filter
        self.config = config

    @property
    def rule(self) -> RuleSpec:
        return RuleSpec(
            chain=self.config.chain,
            action=self.config.action,
            source=f"{self.config.source}/32",
            comment=self.config.comment,
        )

    def present(self) -> bool:
        """Check live state for an exact match of the canary rule.

        Raises:
            ProbeError: If live state cannot be queried
        """
        return self.packet_filter.query(CANARY_FAMILY, self.rule)

    def ensure(self) -> bool:
        """Insert the canary at its fixed position if it is missing.

        Returns:
            True if the canary was inserted, False if already present

        Raises:
            ProbeError: If live state cannot be queried
            FirewallError: If the canary cannot be inserted
        """
        if self.present():
            return False
        self.packet_filter.insert(CANARY_FAMILY, self.rule, self.config.position)
        return True
