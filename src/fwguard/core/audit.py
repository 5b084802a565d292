"""Audit logging for reconciliation cycles.

Provides:
- Append-only, human-readable audit log (one line per event)
- Cycle correlation IDs
- Restrictive file permissions
- Automatic log rotation
"""

import fcntl
import os
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Generator, Optional

from fwguard.core.config import DEFAULT_LOG_PATH
from fwguard.core.output import console


DEFAULT_MAX_SIZE_MB = 10
DEFAULT_BACKUP_COUNT = 5
LOG_FILE_MODE = 0o600
LOG_DIR_MODE = 0o750


class AuditEventType(Enum):
    """Types of auditable events."""
    # Cycle lifecycle
    CYCLE_START = "cycle.start"
    CYCLE_END = "cycle.end"
    CYCLE_SKIPPED = "cycle.skipped"

    # Drift detection
    DRIFT_NONE = "drift.none"
    DRIFT_DETECTED = "drift.detected"

    # Dependency gate
    DEPENDENCY_STABLE = "dependency.stable"
    DEPENDENCY_TIMEOUT = "dependency.timeout"

    # Restore
    SETS_RESTORE = "sets.restore"
    RULES_RESTORE = "rules.restore"

    # Verification
    CANARY_VERIFY = "canary.verify"
    CANARY_POST_BOUNCE = "canary.post_bounce"
    CANARY_INSERT = "canary.insert"

    # Services
    SERVICE_RESTART = "service.restart"
    SUPERVISION_REGISTER = "supervision.register"
    SUPERVISION_START = "supervision.start"

    # Alerts
    ALERT_SENT = "alert.sent"
    ALERT_FAILED = "alert.failed"

    # Snapshots
    SNAPSHOT_SAVE = "snapshot.save"


class AuditResult(Enum):
    """Result of an audited operation."""
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"
    SKIPPED = "skipped"
    DRY_RUN = "dry_run"


@dataclass
class AuditEvent:
    """Represents a single audit event."""
    event_type: AuditEventType
    result: AuditResult
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    target: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    parameters: dict[str, Any] = field(default_factory=dict)

    correlation_id: Optional[str] = None

    def to_line(self) -> str:
        """Render as a single human-readable log line."""
        parts = [
            self.timestamp.isoformat(timespec="seconds"),
            self.event_type.value,
            self.result.value,
        ]
        if self.correlation_id:
            parts.append(f"cycle={self.correlation_id}")
        if self.target:
            parts.append(f"[{self.target}]")
        if self.message:
            parts.append(self.message)
        for key, value in self.parameters.items():
            parts.append(f"{key}={value}")
        if self.error:
            parts.append(f"error={self.error!r}")
        # One event per line, always
        return " ".join(parts).replace("\n", " ")


class AuditLogger:
    """Audit logger for reconciliation events.

    Features:
    - Append-only log file
    - Atomic appends with file locking
    - Automatic log rotation
    - Cycle correlation
    """

    def __init__(
        self,
        log_path: Optional[Path] = None,
        max_size_mb: int = DEFAULT_MAX_SIZE_MB,
        backup_count: int = DEFAULT_BACKUP_COUNT,
        enabled: bool = True,
    ) -> None:
        self.log_path = log_path or DEFAULT_LOG_PATH
        self.max_size_bytes = max_size_mb * 1024 * 1024
        self.backup_count = backup_count
        self.enabled = enabled

        self._correlation_stack: list[str] = []

    def _ensure_log_directory(self) -> bool:
        """Create log directory and file with restrictive permissions.

        Returns:
            True if successful, False otherwise
        """
        try:
            log_dir = self.log_path.parent
            log_dir.mkdir(mode=LOG_DIR_MODE, parents=True, exist_ok=True)

            if not self.log_path.exists():
                self.log_path.touch(mode=LOG_FILE_MODE)

            return True
        except OSError as e:
            console.debug(f"Cannot create audit log directory: {e}")
            return False

    def log(self, event: AuditEvent) -> None:
        """Log an audit event. Failures are reported, never raised."""
        if not self.enabled:
            return

        if self._correlation_stack and event.correlation_id is None:
            event.correlation_id = self._correlation_stack[-1]

        log_line = event.to_line() + "\n"

        if not self._ensure_log_directory():
            return

        try:
            with self._atomic_append() as f:
                f.write(log_line)
        except OSError as e:
            console.debug(f"Failed to write audit log: {e}")
            return

        self._rotate_if_needed()

    @contextmanager
    def _atomic_append(self) -> Generator:
        """Context manager for atomic append with file locking."""
        fd = os.open(
            self.log_path,
            os.O_WRONLY | os.O_APPEND | os.O_CREAT,
            LOG_FILE_MODE,
        )
        try:
            f = os.fdopen(fd, "a")
        except Exception:
            os.close(fd)
            raise
        with f:
            fcntl.flock(fd, fcntl.LOCK_EX)
            yield f
            f.flush()
            os.fsync(fd)

    def _rotate_if_needed(self) -> None:
        try:
            if self.log_path.stat().st_size > self.max_size_bytes:
                self._rotate_logs()
        except OSError as e:
            console.debug(f"Audit log rotation failed: {e}")

    def _rotate_logs(self) -> None:
        oldest = self.log_path.with_name(f"{self.log_path.name}.{self.backup_count}")
        if oldest.exists():
            oldest.unlink()

        for i in range(self.backup_count - 1, 0, -1):
            src = self.log_path.with_name(f"{self.log_path.name}.{i}")
            dst = self.log_path.with_name(f"{self.log_path.name}.{i + 1}")
            if src.exists():
                src.rename(dst)

        self.log_path.rename(self.log_path.with_name(f"{self.log_path.name}.1"))
        self.log_path.touch(mode=LOG_FILE_MODE)

    @contextmanager
    def correlation(self, operation: str) -> Generator[str, None, None]:
        """Context manager for correlating the events of one cycle.

        Usage:
            with audit.correlation("cycle") as corr_id:
                audit.log(event1)
                audit.log(event2)  # Both have same correlation_id
        """
        correlation_id = f"{operation}_{uuid.uuid4().hex[:8]}"
        self._correlation_stack.append(correlation_id)
        try:
            yield correlation_id
        finally:
            self._correlation_stack.pop()

    # Convenience methods
    def record(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        message: Optional[str] = None,
        *,
        target: Optional[str] = None,
        error: Optional[str] = None,
        **parameters: Any,
    ) -> None:
        """Log an event with common fields."""
        self.log(AuditEvent(
            event_type=event_type,
            result=result,
            target=target,
            message=message,
            error=error,
            parameters=parameters,
        ))


# Global audit logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get or create global audit logger."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def configure_audit_logger(
    log_path: Optional[Path] = None,
    max_size_mb: int = DEFAULT_MAX_SIZE_MB,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    enabled: bool = True,
) -> AuditLogger:
    """Configure and return the global audit logger."""
    global _audit_logger
    _audit_logger = AuditLogger(
        log_path=log_path,
        max_size_mb=max_size_mb,
        backup_count=backup_count,
        enabled=enabled,
    )
    return _audit_logger
