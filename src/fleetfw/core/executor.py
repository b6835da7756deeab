"""Command execution on managed hosts.

Provides:
- Local or SSH-routed command execution with output capture
- Live command sessions for streaming output (trace monitors)
- Dry-run mode support
"""

import shlex
import subprocess
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from fleetfw.core.config import HostConfig
from fleetfw.core.context import ExecutionContext
from fleetfw.core.exceptions import ExecutionError


@dataclass
class CommandResult:
    """Result of a command execution."""
    command: list[str]
    return_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        """Check if command succeeded."""
        return self.return_code == 0


class LiveSession:
    """A long-running command whose output is streamed to a callback.

    The reader thread delivers stdout chunks to ``on_data`` as they
    arrive. ``close()`` terminates the process and joins the thread, so
    no data is delivered after it returns.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        on_data: Callable[[str], None],
        on_error: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._process = process
        self._on_data = on_data
        self._on_error = on_error
        self._closed = threading.Event()
        self._reader = threading.Thread(target=self._pump, daemon=True)
        self._reader.start()

    def _pump(self) -> None:
        stream = self._process.stdout
        while not self._closed.is_set():
            line = stream.readline()
            if not line:
                break
            if not self._closed.is_set():
                self._on_data(line)

        if self._on_error is not None and self._process.stderr is not None:
            remainder = self._process.stderr.read()
            if remainder:
                self._on_error(remainder)

    @property
    def alive(self) -> bool:
        return self._process.poll() is None and not self._closed.is_set()

    def close(self, timeout: float = 5.0) -> None:
        """Terminate the command and stop delivering output."""
        self._closed.set()
        if self._process.poll() is None:
            self._process.terminate()
            try:
                self._process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait()
        self._reader.join(timeout=timeout)


class CommandExecutor:
    """Command execution with dry-run support and output capture.

    Commands for a remote host are wrapped in ``ssh``; ``sudo`` is
    prepended when the host is configured for it. Read-only commands
    pass ``mutating=False`` so they still run in dry-run mode.
    """

    def __init__(self, ctx: ExecutionContext) -> None:
        self.ctx = ctx

    def build_command(self, command: list[str], host: Optional[HostConfig] = None) -> list[str]:
        """Wrap a command for execution on ``host``."""
        if host is None:
            return command

        if host.use_sudo:
            command = ["sudo", "--non-interactive"] + command

        if host.is_local:
            return command

        return [
            "ssh",
            "-o", "BatchMode=yes",
            "-p", str(host.ssh_port),
            f"{host.ssh_user}@{host.address}",
            "--",
            shlex.join(command),
        ]

    def run(
        self,
        command: list[str],
        *,
        host: Optional[HostConfig] = None,
        description: Optional[str] = None,
        check: bool = True,
        mutating: bool = True,
        input: Optional[str] = None,
        timeout: Optional[int] = None,
    ) -> CommandResult:
        """Execute a command locally or on a managed host.

        Args:
            command: Command as list of strings
            host: Target host (None = local, no wrapping)
            description: Human-readable description for logging
            check: Raise exception on non-zero exit
            mutating: If False, the command also runs in dry-run mode
            input: Text passed on stdin
            timeout: Command timeout in seconds

        Returns:
            CommandResult with output

        Raises:
            ExecutionError: If command fails and check=True
        """
        full_command = self.build_command(command, host)
        tag = host.id if host else None

        if description:
            self.ctx.console.step(description, host=tag)

        cmd_display = shlex.join(full_command)
        self.ctx.console.debug(f"Running: {cmd_display}", host=tag)

        if self.ctx.dry_run and mutating:
            self.ctx.console.dry_run_msg(f"Run: {cmd_display}", host=tag)
            if input and self.ctx.is_debug:
                self.ctx.console.print(input, markup=False)
            return CommandResult(
                command=full_command,
                return_code=0,
                stdout="",
                stderr="",
            )

        try:
            result = subprocess.run(
                full_command,
                capture_output=True,
                text=True,
                input=input,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise ExecutionError(
                f"Command timed out after {timeout}s: {description or cmd_display}",
                command=cmd_display,
                host=tag,
            )
        except FileNotFoundError as e:
            raise ExecutionError(
                f"Command not found: {full_command[0]}",
                command=cmd_display,
                host=tag,
                details=[str(e)],
            ) from e

        if check and result.returncode != 0:
            raise ExecutionError(
                f"Command failed: {description or cmd_display}",
                command=cmd_display,
                host=tag,
                return_code=result.returncode,
                stderr=result.stderr,
            )

        return CommandResult(
            command=full_command,
            return_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def spawn(
        self,
        command: list[str],
        on_data: Callable[[str], None],
        *,
        host: Optional[HostConfig] = None,
        on_error: Optional[Callable[[str], None]] = None,
    ) -> LiveSession:
        """Start a long-running command streaming its output.

        Raises:
            ExecutionError: If the command cannot be started
        """
        full_command = self.build_command(command, host)
        cmd_display = shlex.join(full_command)
        self.ctx.console.debug(f"Starting live session: {cmd_display}", host=host.id if host else None)

        try:
            process = subprocess.Popen(
                full_command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
        except OSError as e:
            raise ExecutionError(
                f"Cannot start live session: {cmd_display}",
                command=cmd_display,
                details=[str(e)],
            ) from e

        return LiveSession(process, on_data, on_error)
