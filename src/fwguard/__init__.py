"""
fwguard - firewall drift detection and self-healing.

Detects wiped or desynchronized iptables rulesets with a canary rule,
restores the last-known-good snapshot, and keeps its own boot trigger
registered.
"""

__version__ = "1.0.0"
__author__ = "fwguard maintainers"
