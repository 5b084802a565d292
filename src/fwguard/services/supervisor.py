"""Self-supervision of fwguard's own triggers.

fwguard runs from three systemd units:
- boot unit  (oneshot, RemainAfterExit) runs a cycle at boot
- cycle unit (oneshot) runs a cycle, started by the timer
- timer unit starts the cycle unit every `interval`

Every cycle checks that the boot unit and the timer are still registered
(unit file present and enabled) and running, and repairs them if not.
"""

from typing import Optional

from fwguard.core.config import SupervisionConfig
from fwguard.core.context import ExecutionContext
from fwguard.services.alerts import jinja_env
from fwguard.services.result import SupervisionStatus
from fwguard.services.systemd import SystemdService


class SelfSupervisor:
    """Keeps the boot unit and the timer registered and active."""

    def __init__(
        self,
        ctx: ExecutionContext,
        systemd: SystemdService,
        config: SupervisionConfig,
        *,
        dependency: Optional[str] = None,
    ) -> None:
        self.ctx = ctx
        self.systemd = systemd
        self.config = config
        self.dependency = dependency

    @property
    def supervised_units(self) -> list[str]:
        return [self.config.boot_unit, self.config.timer_unit]

    def render_units(self) -> dict[str, str]:
        """Render all unit files, keyed by unit name."""
        service_template = jinja_env.get_template("fwguard.service.j2")
        timer_template = jinja_env.get_template("fwguard.timer.j2")

        return {
            self.config.boot_unit: service_template.render(
                description="fwguard firewall restore at boot",
                boot=True,
                dependency=self.dependency,
                executable=self.config.executable,
            ),
            self.config.cycle_unit: service_template.render(
                description="fwguard firewall reconciliation cycle",
                boot=False,
                dependency=self.dependency,
                executable=self.config.executable,
            ),
            self.config.timer_unit: timer_template.render(
                interval=self.config.interval,
                cycle_unit=self.config.cycle_unit,
            ),
        }

    def install(self) -> None:
        """Write every unit file, then register and start the triggers."""
        for name, content in self.render_units().items():
            self.systemd.install_unit(name, content)
        self.ensure_registered()
        self.ensure_running()

    def uninstall(self) -> list[str]:
        """Stop, disable and remove every unit. Returns the units removed."""
        removed = []
        for name in (self.config.timer_unit, self.config.cycle_unit, self.config.boot_unit):
            if self.systemd.remove_unit(name):
                removed.append(name)
        return removed

    def status(self) -> list[SupervisionStatus]:
        return [
            SupervisionStatus(
                unit=name,
                registered=self.systemd.unit_file_exists(name) and self.systemd.is_enabled(name),
                running=self.systemd.is_active(name),
            )
            for name in self.supervised_units
        ]

    def ensure_registered(self) -> list[str]:
        """Re-create missing unit files and enable disabled units.

        Returns:
            Units that had to be re-registered

        Raises:
            ServiceError: If a unit cannot be enabled
        """
        repaired = []
        rendered: Optional[dict[str, str]] = None

        for name in self.supervised_units:
            if not self.systemd.unit_file_exists(name):
                self.ctx.console.warn(f"Unit file for {name} is missing, re-creating it")
                if rendered is None:
                    rendered = self.render_units()
                self.systemd.install_unit(name, rendered[name])
                # The timer is useless without the unit it starts
                if name == self.config.timer_unit and not self.systemd.unit_file_exists(
                    self.config.cycle_unit
                ):
                    self.systemd.install_unit(
                        self.config.cycle_unit, rendered[self.config.cycle_unit]
                    )
                repaired.append(name)

            if not self.systemd.is_enabled(name):
                self.systemd.enable(name, description=f"Re-registering {name} for boot")
                if name not in repaired:
                    repaired.append(name)

        return repaired

    def ensure_running(self) -> list[str]:
        """Start supervised units that are not active.

        Starts are queued (--no-block): starting the boot unit runs a cycle,
        which must not wait on the one currently running.

        Returns:
            Units that had to be started

        Raises:
            ServiceError: If a unit cannot be started
        """
        started = []
        for name in self.supervised_units:
            if not self.systemd.is_active(name):
                self.systemd.start(name, no_block=True, description=f"Restarting trigger {name}")
                started.append(name)
        return started
