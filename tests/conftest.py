"""Shared fixtures and in-memory fakes.

The fakes stand in for the host-wide collaborators (packet filter,
process supervisor, wall clock) so cycles can be run without root,
iptables, systemd or real delays.
"""

from pathlib import Path
from typing import Callable, Optional

import pytest

from fwguard.core.audit import AuditLogger
from fwguard.core.config import AppConfig, GuardConfig
from fwguard.core.context import ExecutionContext
from fwguard.core.exceptions import FirewallError, ProbeError, ServiceError
from fwguard.core.output import Verbosity
from fwguard.services.packet_filter import Family, PacketFilter, RuleSpec


CANARY_LINE = "-A INPUT -s 192.0.2.254/32 -m comment --comment fwguard-canary -j DROP"

RULES_V4 = f"""*filter
:INPUT DROP [0:0]
:FORWARD DROP [0:0]
:OUTPUT ACCEPT [0:0]
{CANARY_LINE}
-A INPUT -i lo -j ACCEPT
-A INPUT -p tcp -m tcp --dport 22 -j ACCEPT
COMMIT
"""

RULES_V6 = """*filter
:INPUT DROP [0:0]
:FORWARD DROP [0:0]
:OUTPUT ACCEPT [0:0]
-A INPUT -i lo -j ACCEPT
-A INPUT -p tcp -m tcp --dport 22 -j ACCEPT
COMMIT
"""

IPSETS = """create blocklist hash:net family inet hashsize 1024 maxelem 65536
add blocklist 198.51.100.0/24
"""


def rule_line(rule: RuleSpec) -> str:
    return " ".join(["-A", rule.chain] + rule.to_iptables_args())


class FakePacketFilter(PacketFilter):
    """In-memory packet filter.

    Live state is the text of the last ruleset loaded per family. A rule
    is present when its iptables-save line appears in that text.
    """

    def __init__(self) -> None:
        self.live: dict[Family, str] = {Family.V4: "", Family.V6: ""}
        self.sets: Optional[str] = None
        self.calls: list[tuple] = []

        self.fail_load: set[Family] = set()
        self.fail_sets = False
        self.fail_query = False

    def flush(self, family: Optional[Family] = None) -> None:
        """Wipe live rules the way an external actor would."""
        for f in ([family] if family else list(Family)):
            self.live[f] = ""

    def save(self, family: Family) -> str:
        self.calls.append(("save", family))
        return self.live[family]

    def load(self, family: Family, content: str) -> None:
        self.calls.append(("load", family))
        if family in self.fail_load:
            raise FirewallError(f"{family.value} snapshot rejected", family=family.value)
        if "--match-set" in content and self.sets is None:
            raise FirewallError(
                f"{family.value} snapshot rejected",
                family=family.value,
                details=["Set blocklist doesn't exist."],
            )
        self.live[family] = content

    def query(self, family: Family, rule: RuleSpec) -> bool:
        self.calls.append(("query", family))
        if self.fail_query:
            raise ProbeError(f"Cannot query {family.value} filter state")
        return rule_line(rule) in self.live[family].splitlines()

    def insert(self, family: Family, rule: RuleSpec, position: int = 1) -> None:
        self.calls.append(("insert", family, position))
        lines = self.live[family].splitlines()
        lines.insert(position - 1, rule_line(rule))
        self.live[family] = "\n".join(lines) + "\n"

    def save_sets(self) -> str:
        self.calls.append(("save_sets",))
        return self.sets or ""

    def load_sets(self, content: str) -> None:
        self.calls.append(("load_sets",))
        if self.fail_sets:
            raise FirewallError("Could not restore ipsets")
        self.sets = content

    def loaded(self) -> list[Family]:
        return [c[1] for c in self.calls if c[0] == "load"]


class FakeSystemd:
    """In-memory process supervisor with the SystemdService interface."""

    def __init__(self) -> None:
        self.active: set[str] = set()
        self.enabled: set[str] = set()
        self.unit_files: dict[str, str] = {}
        self.calls: list[tuple] = []

        self.fail_restart: set[str] = set()
        self.fail_enable: set[str] = set()
        self.on_restart: dict[str, Callable[[], None]] = {}

    def is_active(self, service: str) -> bool:
        return service in self.active

    def is_enabled(self, service: str) -> bool:
        return service in self.enabled

    def start(self, service: str, *, no_block: bool = False, description: Optional[str] = None) -> None:
        self.calls.append(("start", service, no_block))
        self.active.add(service)

    def stop(self, service: str, *, description: Optional[str] = None) -> None:
        self.calls.append(("stop", service))
        self.active.discard(service)

    def restart(self, service: str, *, description: Optional[str] = None) -> None:
        self.calls.append(("restart", service))
        if service in self.fail_restart:
            raise ServiceError(f"Failed to restart {service}", service=service)
        if service in self.on_restart:
            self.on_restart[service]()
        self.active.add(service)

    def enable(self, service: str, *, start: bool = False, description: Optional[str] = None) -> None:
        self.calls.append(("enable", service))
        if service in self.fail_enable:
            raise ServiceError(f"Failed to enable {service}", service=service)
        self.enabled.add(service)
        if start:
            self.active.add(service)

    def disable(self, service: str, *, stop: bool = False, description: Optional[str] = None) -> None:
        self.calls.append(("disable", service))
        self.enabled.discard(service)

    def daemon_reload(self) -> None:
        self.calls.append(("daemon-reload",))

    def unit_file_exists(self, name: str) -> bool:
        return name in self.unit_files

    def install_unit(self, name: str, content: str, *, description: Optional[str] = None) -> Path:
        self.calls.append(("install_unit", name))
        self.unit_files[name] = content
        return Path("/etc/systemd/system") / name

    def remove_unit(self, name: str, *, description: Optional[str] = None) -> bool:
        self.calls.append(("remove_unit", name))
        if name not in self.unit_files:
            return False
        del self.unit_files[name]
        self.active.discard(name)
        self.enabled.discard(name)
        return True


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host environment overrides out of tests."""
    monkeypatch.delenv("FWGUARD_HOSTNAME", raising=False)
    monkeypatch.delenv("FWGUARD_ALERT_RECIPIENT", raising=False)


@pytest.fixture
def guard_config(tmp_path) -> GuardConfig:
    return GuardConfig(
        hostname="gw-test.example.com",
        lock_path=tmp_path / "run" / "fwguard.lock",
        snapshots={
            "rules_v4": tmp_path / "iptables" / "rules.v4",
            "rules_v6": tmp_path / "iptables" / "rules.v6",
            "backup_dir": tmp_path / "backup",
            "ipsets": tmp_path / "iptables" / "ipsets",
        },
        gate={"poll_interval": 2, "max_wait": 60, "settle_delay": 5},
        audit={"log_path": tmp_path / "log" / "reconcile.log"},
    )


@pytest.fixture
def app_config(tmp_path, guard_config) -> AppConfig:
    return AppConfig(config_path=tmp_path / "config.yaml", config=guard_config)


@pytest.fixture
def ctx(tmp_path, app_config) -> ExecutionContext:
    return ExecutionContext(
        verbosity=Verbosity.QUIET,
        no_color=True,
        config_path=tmp_path / "config.yaml",
        _config=app_config,
    )


@pytest.fixture
def snapshots(guard_config) -> GuardConfig:
    """Write valid v4 (with canary) and v6 snapshots."""
    snap = guard_config.snapshots
    snap.rules_v4.parent.mkdir(parents=True, exist_ok=True)
    snap.rules_v4.write_text(RULES_V4)
    snap.rules_v6.write_text(RULES_V6)
    return guard_config


@pytest.fixture
def packet_filter() -> FakePacketFilter:
    return FakePacketFilter()


@pytest.fixture
def systemd() -> FakeSystemd:
    return FakeSystemd()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audit_logger(guard_config) -> AuditLogger:
    return AuditLogger(log_path=guard_config.audit.log_path)
