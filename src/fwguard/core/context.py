"""Per-process context for fwguard commands.

One ExecutionContext is built from the global CLI options and handed to
the reconciler, the packet filter, the snapshot store and the systemd
wrapper. Its dry_run flag is what keeps `fwguard run --dry-run` from
loading rulesets or restarting the auxiliary service, and its config is
the single loaded /etc/fwguard/config.yaml for the process.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fwguard.core.config import AppConfig, DEFAULT_CONFIG_PATH
from fwguard.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Flags and lazily loaded configuration shared by one fwguard process.

    Attributes:
        dry_run: If True, report restores, restarts and unit changes without making them
        yes: If True, skip the uninstall confirmation prompt
        verbosity: Output verbosity level (0-3)
        no_color: If True, disable colored output
        config_path: Path to configuration file
    """

    dry_run: bool = False
    yes: bool = False
    verbosity: int = 1
    no_color: bool = False

    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    # Internal state (initialized lazily)
    _config: Optional[AppConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        """Configure console after initialization."""
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def config(self) -> AppConfig:
        """Get application configuration (lazy loaded)."""
        if self._config is None:
            self._config = AppConfig(config_path=self.config_path)
        return self._config

    @property
    def console(self) -> Console:
        return self._console


def create_context(
    dry_run: bool = False,
    yes: bool = False,
    verbose: int = 0,
    quiet: bool = False,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Create an execution context from CLI options.

    Args:
        dry_run: Preview changes without executing
        yes: Skip confirmation prompts
        verbose: Increase verbosity (can be repeated)
        quiet: Warnings and errors only (used by the timer unit)
        no_color: Disable colored output
        config: Path to configuration file

    Returns:
        Configured execution context
    """
    if quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = min(Verbosity.NORMAL + verbose, Verbosity.DEBUG)

    return ExecutionContext(
        dry_run=dry_run,
        yes=yes,
        verbosity=verbosity,
        no_color=no_color,
        config_path=config or DEFAULT_CONFIG_PATH,
    )
