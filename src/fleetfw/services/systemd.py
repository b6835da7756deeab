"""Boot-time loading of the persisted ruleset.

A ruleset written to the netfilter config file only survives a reboot
if the distribution's loader unit (``nftables`` by default) is enabled.
"""

from fleetfw.core.config import HostConfig
from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import ExecutionError, ServiceError
from fleetfw.core.executor import CommandExecutor


class SystemdService:
    """systemctl on a managed host."""

    def __init__(self, ctx: ExecutionContext, executor: CommandExecutor) -> None:
        self.ctx = ctx
        self.executor = executor

    def ensure_enabled(self, unit: str, host: HostConfig) -> bool:
        """Enable ``unit`` at boot unless it already is.

        Returns:
            True if the unit had to be enabled

        Raises:
            ServiceError: If systemctl refuses to enable the unit
        """
        probe = self.executor.run(
            ["systemctl", "is-enabled", "--quiet", unit],
            host=host,
            check=False,
            mutating=False,
        )
        if probe.success:
            return False

        try:
            self.executor.run(
                ["systemctl", "enable", unit],
                host=host,
                description=f"Enabling {unit} at boot on {host.id}",
            )
        except ExecutionError as e:
            raise ServiceError(
                f"{unit} cannot be enabled on {host.id}",
                details=e.details,
                hint=f"The ruleset is active but will not survive a reboot; check 'systemctl status {unit}'",
            ) from e
        return True
