"""Execution context for commands and services.

One ExecutionContext is built per CLI invocation and handed to every
service. It carries the run flags (dry-run, verbosity, prompts), the
lazily loaded fleet configuration and the shared console.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from fleetfw.core.config import (
    AppConfig,
    DEFAULT_CONFIG_PATH,
    FleetConfig,
    HostConfig,
    NetfilterConfig,
)
from fleetfw.core.output import Console, console, Verbosity


@dataclass
class ExecutionContext:
    """Run flags, fleet configuration and console.

    Attributes:
        dry_run: Show mutating commands instead of running them
        yes: Answer confirmation prompts with yes
        verbosity: Output verbosity level (0-3)
        no_color: Disable colored output
        config_path: Fleet configuration file
    """

    dry_run: bool = False
    yes: bool = False
    verbosity: int = 1
    no_color: bool = False
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG_PATH)

    _config: Optional[AppConfig] = field(default=None, repr=False)
    _console: Console = field(default_factory=lambda: console, repr=False)

    def __post_init__(self) -> None:
        self._console.configure(
            verbosity=self.verbosity,
            dry_run=self.dry_run,
            no_color=self.no_color,
        )

    @property
    def config(self) -> AppConfig:
        """Application configuration, loaded on first access."""
        if self._config is None:
            self._config = AppConfig(config_path=self.config_path)
        return self._config

    @property
    def fleet(self) -> FleetConfig:
        return self.config.config

    @property
    def netfilter(self) -> NetfilterConfig:
        return self.config.netfilter

    def host(self, host_id: str) -> HostConfig:
        """Configured host by id.

        Raises:
            ConfigurationError: If the host is not part of the fleet
        """
        return self.fleet.host(host_id)

    @property
    def console(self) -> Console:
        return self._console

    def confirm(self, message: str) -> bool:
        """Ask before a destructive change. ``--yes`` and ``--dry-run`` skip the prompt."""
        return self.yes or self.dry_run or self._console.confirm(message)

    @property
    def is_verbose(self) -> bool:
        return self.verbosity >= Verbosity.VERBOSE

    @property
    def is_debug(self) -> bool:
        return self.verbosity >= Verbosity.DEBUG


def create_context(
    dry_run: bool = False,
    yes: bool = False,
    verbose: int = 0,
    no_color: bool = False,
    config: Optional[Path] = None,
) -> ExecutionContext:
    """Build the context for one CLI invocation.

    ``verbose`` is the number of ``-v`` flags.
    """
    return ExecutionContext(
        dry_run=dry_run,
        yes=yes,
        verbosity=min(Verbosity.NORMAL + verbose, Verbosity.DEBUG),
        no_color=no_color,
        config_path=config or DEFAULT_CONFIG_PATH,
    )
