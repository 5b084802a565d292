"""Systemd service abstraction.

Provides a safe interface for the process-supervisor operations fwguard
needs: querying, starting, restarting and registering units.
"""

from pathlib import Path
from typing import Optional

from fwguard.core.context import ExecutionContext
from fwguard.core.executor import CommandExecutor
from fwguard.core.exceptions import ExecutionError, ServiceError


# Standard systemd paths
SYSTEMD_SYSTEM_DIR = Path("/etc/systemd/system")

# Bounds for systemctl calls; a hung unit job must not stall a cycle
QUERY_TIMEOUT = 15
JOB_TIMEOUT = 120


class SystemdService:
    """Safe interface for managing systemd units.

    All mutating operations respect dry-run mode and log appropriately.
    """

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        self.ctx = ctx
        self.executor = executor

    def is_active(self, service: str) -> bool:
        """Check if a unit is active (running, or exited with RemainAfterExit)."""
        result = self.executor.run(
            ["systemctl", "is-active", "--quiet", service],
            check=False,
            mutating=False,
            timeout=QUERY_TIMEOUT,
        )
        return result.success

    def is_enabled(self, service: str) -> bool:
        """Check if a unit is enabled to start at boot."""
        result = self.executor.run(
            ["systemctl", "is-enabled", "--quiet", service],
            check=False,
            mutating=False,
            timeout=QUERY_TIMEOUT,
        )
        return result.success

    def start(
        self,
        service: str,
        *,
        no_block: bool = False,
        description: Optional[str] = None,
    ) -> None:
        """Start a unit.

        Args:
            service: Unit name
            no_block: Queue the start job without waiting for it
            description: Optional description for logging

        Raises:
            ServiceError: If the unit fails to start
        """
        self.ctx.console.step(description or f"Starting {service}")

        args = ["systemctl", "start"]
        if no_block:
            args.append("--no-block")
        args.append(service)

        try:
            self.executor.run(args, timeout=JOB_TIMEOUT)
        except ExecutionError as e:
            raise ServiceError(
                f"Failed to start {service}",
                service=service,
                hint=f"Check logs: journalctl -xeu {service}",
                details=e.details,
            ) from e

    def stop(self, service: str, *, description: Optional[str] = None) -> None:
        """Stop a unit.

        Raises:
            ServiceError: If the unit fails to stop
        """
        self.ctx.console.step(description or f"Stopping {service}")

        try:
            self.executor.run(["systemctl", "stop", service], timeout=JOB_TIMEOUT)
        except ExecutionError as e:
            raise ServiceError(
                f"Failed to stop {service}",
                service=service,
                details=e.details,
            ) from e

    def restart(self, service: str, *, description: Optional[str] = None) -> None:
        """Restart a unit.

        Raises:
            ServiceError: If the unit fails to restart
        """
        self.ctx.console.step(description or f"Restarting {service}")

        try:
            self.executor.run(["systemctl", "restart", service], timeout=JOB_TIMEOUT)
        except ExecutionError as e:
            raise ServiceError(
                f"Failed to restart {service}",
                service=service,
                hint=f"Check logs: journalctl -xeu {service}",
                details=e.details,
            ) from e

    def enable(
        self,
        service: str,
        *,
        start: bool = False,
        description: Optional[str] = None,
    ) -> None:
        """Enable a unit to start on boot.

        Args:
            service: Unit name
            start: Also start the unit now
            description: Optional description for logging

        Raises:
            ServiceError: If systemctl enable fails
        """
        self.ctx.console.step(description or f"Enabling {service}")

        args = ["systemctl", "enable"]
        if start:
            args.append("--now")
        args.append(service)

        try:
            self.executor.run(args, timeout=JOB_TIMEOUT)
        except ExecutionError as e:
            raise ServiceError(
                f"Failed to enable {service}",
                service=service,
                details=e.details,
            ) from e

    def disable(
        self,
        service: str,
        *,
        stop: bool = False,
        description: Optional[str] = None,
    ) -> None:
        """Disable a unit from starting on boot."""
        self.ctx.console.step(description or f"Disabling {service}")

        args = ["systemctl", "disable"]
        if stop:
            args.append("--now")
        args.append(service)

        self.executor.run(args, timeout=JOB_TIMEOUT)

    def daemon_reload(self) -> None:
        """Reload systemd daemon configuration."""
        self.ctx.console.step("Reloading systemd daemon")
        self.executor.run(["systemctl", "daemon-reload"], timeout=JOB_TIMEOUT)

    def unit_file_exists(self, name: str) -> bool:
        """Check if a unit file exists in /etc/systemd/system/."""
        return (SYSTEMD_SYSTEM_DIR / name).exists()

    def install_unit(
        self,
        name: str,
        content: str,
        *,
        description: Optional[str] = None,
    ) -> Path:
        """Write a unit file and reload the daemon.

        Enabling and starting are left to the caller.

        Args:
            name: Full unit name (e.g. "fwguard.service", "fwguard.timer")
            content: Content of the unit file
            description: Optional description for logging

        Returns:
            Path to the unit file
        """
        unit_path = SYSTEMD_SYSTEM_DIR / name

        self.executor.write_file(
            unit_path,
            content,
            description=description or f"Installing unit {name}",
            permissions=0o644,
        )
        self.ctx.console.debug(f"Created unit: {unit_path}")

        self.daemon_reload()
        return unit_path

    def remove_unit(
        self,
        name: str,
        *,
        description: Optional[str] = None,
    ) -> bool:
        """Stop, disable and remove a unit file.

        Returns:
            True if the unit was removed, False if it didn't exist
        """
        unit_path = SYSTEMD_SYSTEM_DIR / name

        self.ctx.console.step(description or f"Removing unit {name}")

        if self.ctx.dry_run:
            self.ctx.console.dry_run_msg(f"Stop, disable and remove {unit_path}")
            return unit_path.exists()

        if not unit_path.exists():
            return False

        if self.is_active(name):
            self.stop(name)

        if self.is_enabled(name):
            self.disable(name)

        unit_path.unlink()
        self.daemon_reload()

        return True
