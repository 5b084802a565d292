"""Configuration management using Pydantic.

Provides:
- Typed configuration models with validation
- YAML file loading with defaults
- Environment variable overrides
- Configuration initialization and display
"""

import ipaddress
import os
import re
import socket
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fwguard.core.exceptions import ConfigurationError


# Default configuration paths
DEFAULT_CONFIG_PATH = Path("/etc/fwguard/config.yaml")
DEFAULT_LOG_PATH = Path("/var/log/fwguard/reconcile.log")
DEFAULT_LOCK_PATH = Path("/run/fwguard.lock")

VALID_FAMILIES = ("v4", "v6")
VALID_ACTIONS = {"ACCEPT", "DROP", "REJECT", "RETURN", "LOG"}

_UNIT_NAME_RE = re.compile(r"^[A-Za-z0-9:_.@\\-]+$")
_SYSTEMD_TIMESPAN_RE = re.compile(r"^\d+(us|ms|s|sec|m|min|h|hr|d)?$")


def _validate_unit_name(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not _UNIT_NAME_RE.match(v):
        raise ValueError(f"Invalid systemd unit name: {v!r}")
    return v


class SnapshotConfig(BaseModel):
    """Where snapshots live on disk."""

    rules_v4: Path = Path("/etc/iptables/rules.v4")
    rules_v6: Path = Path("/etc/iptables/rules.v6")
    backup_dir: Path = Path("/var/lib/fwguard/backup")
    ipsets: Path = Path("/etc/iptables/ipsets")
    sets_enabled: bool = False
    families: list[str] = Field(default_factory=lambda: list(VALID_FAMILIES))

    @field_validator("families")
    @classmethod
    def validate_families(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("At least one address family is required")
        for family in v:
            if family not in VALID_FAMILIES:
                raise ValueError(f"Address family must be one of: {list(VALID_FAMILIES)}")
        # The canary is an IPv4 rule; without a v4 snapshot a wipe is never healed
        if "v4" not in v:
            raise ValueError("families must include v4, which carries the canary rule")
        # Restores always run v4 before v6
        return [f for f in VALID_FAMILIES if f in v]


class CanaryConfig(BaseModel):
    """The inert rule used as a flush detector."""

    source: str = "192.0.2.254"
    comment: str = "fwguard-canary"
    action: str = "DROP"
    chain: str = "INPUT"
    position: int = 1

    @field_validator("source")
    @classmethod
    def validate_source(cls, v: str) -> str:
        try:
            ipaddress.IPv4Address(v)
        except ValueError as e:
            raise ValueError(f"Canary source must be an IPv4 address: {v}") from e
        return v

    @field_validator("comment")
    @classmethod
    def validate_comment(cls, v: str) -> str:
        if not v or len(v) > 256 or not re.match(r"^[A-Za-z0-9_.:-]+$", v):
            raise ValueError("Canary comment must be 1-256 chars of [A-Za-z0-9_.:-]")
        return v

    @field_validator("action")
    @classmethod
    def validate_action(cls, v: str) -> str:
        v = v.upper()
        if v not in VALID_ACTIONS:
            raise ValueError(f"Canary action must be one of: {sorted(VALID_ACTIONS)}")
        return v

    @field_validator("position")
    @classmethod
    def validate_position(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Canary position must be >= 1")
        return v


class GateConfig(BaseModel):
    """Dependency that mutates filter state while it starts (e.g. a VPN daemon)."""

    service: Optional[str] = None
    poll_interval: float = 2.0
    max_wait: float = 60.0
    settle_delay: float = 5.0

    @field_validator("service")
    @classmethod
    def validate_service(cls, v: Optional[str]) -> Optional[str]:
        return _validate_unit_name(v)

    @field_validator("poll_interval")
    @classmethod
    def validate_poll_interval(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("poll_interval must be positive")
        return v

    @field_validator("max_wait", "settle_delay")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("Gate timings must not be negative")
        return v


class AuxiliaryConfig(BaseModel):
    """Service that builds its own chains on top of the base ruleset."""

    service: Optional[str] = "fail2ban.service"

    @field_validator("service")
    @classmethod
    def validate_service(cls, v: Optional[str]) -> Optional[str]:
        return _validate_unit_name(v)


class AlertConfig(BaseModel):
    """Alert delivery settings."""

    enabled: bool = True
    recipient: str = "root"
    mail_command: str = "mail"
    subject_prefix: str = "[fwguard]"


class SupervisionConfig(BaseModel):
    """Boot-time trigger that fwguard keeps registered."""

    enabled: bool = True
    boot_unit: str = "fwguard.service"
    timer_unit: str = "fwguard.timer"
    cycle_unit: str = "fwguard-cycle.service"
    interval: str = "5min"
    executable: str = "/usr/local/bin/fwguard"

    @field_validator("boot_unit", "timer_unit", "cycle_unit")
    @classmethod
    def validate_units(cls, v: str) -> str:
        return _validate_unit_name(v)

    @field_validator("interval")
    @classmethod
    def validate_interval(cls, v: str) -> str:
        if not _SYSTEMD_TIMESPAN_RE.match(v):
            raise ValueError(f"Invalid systemd time span: {v!r}")
        return v


class AuditConfig(BaseModel):
    """Audit log settings."""

    log_path: Path = DEFAULT_LOG_PATH
    max_size_mb: int = 10
    backup_count: int = 5


class GuardConfig(BaseModel):
    """Root configuration model.

    Loaded from /etc/fwguard/config.yaml. Every section has defaults so
    an empty or missing file yields a working configuration.
    """

    hostname: Optional[str] = None
    lock_path: Path = DEFAULT_LOCK_PATH

    snapshots: SnapshotConfig = Field(default_factory=SnapshotConfig)
    canary: CanaryConfig = Field(default_factory=CanaryConfig)
    gate: GateConfig = Field(default_factory=GateConfig)
    auxiliary: AuxiliaryConfig = Field(default_factory=AuxiliaryConfig)
    alerts: AlertConfig = Field(default_factory=AlertConfig)
    supervision: SupervisionConfig = Field(default_factory=SupervisionConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    @classmethod
    def load(cls, path: Path) -> "GuardConfig":
        """Load configuration from YAML file.

        Args:
            path: Path to configuration file

        Returns:
            Loaded configuration

        Raises:
            ConfigurationError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigurationError(
                f"Configuration file not found: {path}",
                hint="Create it with: fwguard config init",
            )

        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Invalid YAML in configuration file: {path}",
                details=[str(e)],
            ) from e
        except PermissionError:
            raise ConfigurationError(
                f"Cannot read configuration file: {path}",
                hint="Check file permissions or run with sudo",
            )

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Configuration file must contain a mapping: {path}",
            )

        try:
            return cls(**data)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration: {e}",
                details=[str(e)],
            ) from e

    @classmethod
    def load_or_default(cls, path: Optional[Path] = None) -> "GuardConfig":
        """Load configuration, falling back to defaults if file doesn't exist."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if path.exists():
            return cls.load(path)
        return cls()

    def to_yaml(self) -> str:
        """Convert configuration to YAML string."""
        data = self.model_dump(mode="json", exclude_none=True)
        return yaml.dump(data, default_flow_style=False, sort_keys=False)


class EnvOverrides(BaseSettings):
    """Overrides read from the environment.

    Useful for per-host values in otherwise shared config files.
    """

    model_config = SettingsConfigDict(extra="ignore")

    hostname: Optional[str] = Field(None, alias="FWGUARD_HOSTNAME")
    alert_recipient: Optional[str] = Field(None, alias="FWGUARD_ALERT_RECIPIENT")


class AppConfig:
    """Application configuration combining config file and environment.

    This is the main interface for accessing configuration throughout the app.
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        config: Optional[GuardConfig] = None,
    ) -> None:
        self.config_path = config_path or DEFAULT_CONFIG_PATH
        self._config = config or GuardConfig.load_or_default(self.config_path)
        self._env = EnvOverrides()

    @property
    def config(self) -> GuardConfig:
        return self._config

    @property
    def snapshots(self) -> SnapshotConfig:
        return self._config.snapshots

    @property
    def canary(self) -> CanaryConfig:
        return self._config.canary

    @property
    def gate(self) -> GateConfig:
        return self._config.gate

    @property
    def auxiliary(self) -> AuxiliaryConfig:
        return self._config.auxiliary

    @property
    def alerts(self) -> AlertConfig:
        return self._config.alerts

    @property
    def supervision(self) -> SupervisionConfig:
        return self._config.supervision

    @property
    def audit(self) -> AuditConfig:
        return self._config.audit

    @property
    def hostname(self) -> str:
        """Host identity used in reports (env > config > system)."""
        return self._env.hostname or self._config.hostname or socket.getfqdn()

    @property
    def alert_recipient(self) -> str:
        return self._env.alert_recipient or self._config.alerts.recipient


def get_example_config() -> str:
    """Generate example configuration file content."""
    return """# fwguard configuration
# Every key is optional; missing keys use the defaults shown here.

# Host identity used in alert reports (defaults to the system FQDN)
# hostname: gw-01.example.com

# Snapshots written by 'fwguard save' and restored on drift
snapshots:
  rules_v4: /etc/iptables/rules.v4
  rules_v6: /etc/iptables/rules.v6
  backup_dir: /var/lib/fwguard/backup
  ipsets: /etc/iptables/ipsets
  sets_enabled: false  # restore ipsets before rules
  families: [v4, v6]

# Inert rule whose absence means the ruleset was flushed
canary:
  source: 192.0.2.254  # TEST-NET-1, never routed
  comment: fwguard-canary
  action: DROP
  chain: INPUT
  position: 1

# Service that rewrites firewall rules while it starts (e.g. a VPN daemon)
gate:
  # service: openvpn-server@server.service
  poll_interval: 2
  max_wait: 60
  settle_delay: 5

# Service restarted after a restore so it rebuilds its own chains
auxiliary:
  service: fail2ban.service

alerts:
  enabled: true
  recipient: root  # or FWGUARD_ALERT_RECIPIENT
  mail_command: mail
  subject_prefix: "[fwguard]"

# Boot unit and timer kept registered by every cycle
supervision:
  enabled: true
  boot_unit: fwguard.service
  timer_unit: fwguard.timer
  cycle_unit: fwguard-cycle.service  # started by the timer
  interval: 5min
  executable: /usr/local/bin/fwguard

audit:
  log_path: /var/log/fwguard/reconcile.log
  max_size_mb: 10
  backup_count: 5
"""


def init_config(path: Path, force: bool = False) -> None:
    """Initialize a new configuration file.

    Args:
        path: Path to create config file
        force: Overwrite if exists

    Raises:
        ConfigurationError: If file exists and force is False
    """
    if path.exists() and not force:
        raise ConfigurationError(
            f"Configuration file already exists: {path}",
            hint="Use --force to overwrite",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_example_config())
    os.chmod(path, 0o600)
