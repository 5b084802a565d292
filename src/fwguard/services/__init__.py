"""Service layer: packet filter, process supervisor and reconciliation."""

from fwguard.services.packet_filter import Family, IptablesFilter, PacketFilter, RuleSpec
from fwguard.services.systemd import SystemdService
from fwguard.services.reconciler import Reconciler, build_reconciler

__all__ = [
    "Family",
    "IptablesFilter",
    "PacketFilter",
    "RuleSpec",
    "SystemdService",
    "Reconciler",
    "build_reconciler",
]
