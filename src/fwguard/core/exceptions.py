"""Custom exceptions for fwguard.

All exceptions provide:
- Clear error messages
- Optional hints for resolution
- Optional details for debugging
- Exit codes for proper shell integration
"""

from typing import Optional


class FwGuardError(Exception):
    """Base exception for all fwguard errors.

    Attributes:
        message: Human-readable error description
        hint: Suggested action to resolve the error
        details: Additional context for debugging
        exit_code: Shell exit code (1-127)
    """

    exit_code: int = 1

    def __init__(
        self,
        message: str,
        *,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        self.details = details or []

    def __str__(self) -> str:
        return self.message


class ConfigurationError(FwGuardError):
    """Configuration file or settings errors.

    Raised when:
    - Config file unreadable
    - Invalid YAML syntax
    - Invalid configuration values
    """
    exit_code = 2


class ExecutionError(FwGuardError):
    """Command execution failures.

    Raised when:
    - Shell command returns non-zero exit code
    - Command times out
    - Command binary is missing
    """
    exit_code = 5

    def __init__(
        self,
        message: str,
        *,
        command: Optional[str] = None,
        return_code: Optional[int] = None,
        stderr: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        if not details:
            details = []
        if return_code is not None:
            details.append(f"Exit code: {return_code}")
        if stderr:
            details.append(f"Error output: {stderr.strip()}")
        super().__init__(message, hint=hint, details=details)
        self.command = command
        self.return_code = return_code
        self.stderr = stderr


class PrerequisiteError(FwGuardError):
    """Missing prerequisites.

    Raised when:
    - Required command not found
    - Insufficient permissions
    """
    exit_code = 6


class ServiceError(FwGuardError):
    """Systemd unit errors.

    Raised when:
    - Start/enable/restart fails
    - Unit file cannot be written
    """
    exit_code = 13

    def __init__(
        self,
        message: str,
        *,
        service: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.service = service


class FirewallError(FwGuardError):
    """Packet filter errors.

    Raised when:
    - iptables-save / iptables-restore fails
    - A snapshot fails validation
    - ipset restore fails
    """
    exit_code = 15

    def __init__(
        self,
        message: str,
        *,
        family: Optional[str] = None,
        hint: Optional[str] = None,
        details: Optional[list[str]] = None,
    ) -> None:
        super().__init__(message, hint=hint, details=details)
        self.family = family


class SnapshotError(FwGuardError):
    """Snapshot storage errors.

    Raised when:
    - Snapshot file is missing
    - Snapshot file is unreadable or empty
    - Snapshot cannot be written
    """
    exit_code = 20


class ProbeError(FwGuardError):
    """The live filter state could not be queried.

    Distinct from "canary absent": this means the answer is unknown.
    """
    exit_code = 21


class AlertDeliveryError(FwGuardError):
    """The mail transport rejected or failed to deliver a report."""
    exit_code = 22
