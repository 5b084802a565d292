"""Core framework components for fwguard."""

from fwguard.core.exceptions import (
    FwGuardError,
    ConfigurationError,
    ExecutionError,
    PrerequisiteError,
    ServiceError,
    FirewallError,
    SnapshotError,
    ProbeError,
    AlertDeliveryError,
)

from fwguard.core.context import ExecutionContext, create_context
from fwguard.core.output import console, Console, Verbosity
from fwguard.core.config import AppConfig, GuardConfig
from fwguard.core.audit import (
    AuditLogger,
    AuditEvent,
    AuditEventType,
    AuditResult,
    configure_audit_logger,
    get_audit_logger,
)
from fwguard.core.executor import CommandExecutor, CommandResult

__all__ = [
    # Exceptions
    "FwGuardError",
    "ConfigurationError",
    "ExecutionError",
    "PrerequisiteError",
    "ServiceError",
    "FirewallError",
    "SnapshotError",
    "ProbeError",
    "AlertDeliveryError",
    # Context
    "ExecutionContext",
    "create_context",
    # Output
    "console",
    "Console",
    "Verbosity",
    # Config
    "AppConfig",
    "GuardConfig",
    # Audit
    "AuditLogger",
    "AuditEvent",
    "AuditEventType",
    "AuditResult",
    "configure_audit_logger",
    "get_audit_logger",
    # Executor
    "CommandExecutor",
    "CommandResult",
]
