"""Dependency gate.

Some services (VPN daemons in particular) rewrite filter state while they
start. Restoring before they settle means the restore may be undone a
moment later, so a cycle waits, bounded, for such a dependency first.

The wait never blocks past max_wait: if the dependency is not active by
then, the gate returns False and the restore goes ahead anyway. The next
cycle re-checks the canary.
"""

import time
from typing import Callable, Protocol

from fwguard.core.exceptions import ExecutionError
from fwguard.core.output import Console


class ActivityChecker(Protocol):
    def is_active(self, service: str) -> bool: ...


class DependencyGate:
    """Bounded wait for a named service to become active and settle."""

    def __init__(
        self,
        supervisor: ActivityChecker,
        console: Console,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.supervisor = supervisor
        self.console = console
        self.clock = clock
        self.sleep = sleep

    def await_stable(
        self,
        service_name: str,
        poll_interval: float,
        max_wait: float,
        settle_delay: float = 0.0,
    ) -> bool:
        """Wait until service_name is active, then for settle_delay more.

        Args:
            service_name: Unit to wait for
            poll_interval: Seconds between activity checks
            max_wait: Upper bound on the time spent polling
            settle_delay: Extra wait after the service is first seen active

        Returns:
            True if the service became active within max_wait,
            False if max_wait elapsed first
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        deadline = self.clock() + max_wait
        announced = False

        while True:
            if self._is_active(service_name):
                self.console.info(f"{service_name} is active")
                if settle_delay > 0:
                    self.console.verbose(
                        f"Waiting {settle_delay:g}s for {service_name} to settle"
                    )
                    self.sleep(settle_delay)
                return True

            remaining = deadline - self.clock()
            if remaining <= 0:
                self.console.warn(
                    f"{service_name} not active after {max_wait:g}s, proceeding anyway"
                )
                return False

            if not announced:
                self.console.info(f"Waiting for {service_name} to start...")
                announced = True

            self.sleep(min(poll_interval, remaining))

    def _is_active(self, service_name: str) -> bool:
        try:
            return self.supervisor.is_active(service_name)
        except ExecutionError as e:
            self.console.debug(f"Cannot query {service_name}: {e}")
            return False
