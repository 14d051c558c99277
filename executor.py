"""
executor.py — run one command on one host, locally or over SSH.

Local targets (address "localhost") run the argument vector directly.
Remote targets go through the OpenSSH client; the argument vector is
collapsed into a single remote command line by remote_command_line(),
which is the only place Maestro quotes for a remote shell.

Password credentials are handed to sshpass through the SSHPASS
environment variable of the child, so the secret never appears in an
argument list.
"""

import asyncio
import logging
import os
import shlex
import shutil
import time
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from fleet_config import HostDescriptor, KeyFile, MaestroError, Password

logger = logging.getLogger("maestro-exec")

TIMEOUT = int(os.environ.get("SSH_TIMEOUT", "300"))

# Exit code a POSIX shell reports for "command not found".
COMMAND_NOT_FOUND = 127
# OpenSSH exits 255 when the connection itself failed.
SSH_TRANSPORT_ERROR = 255

SSH_OPTIONS = [
    "-o", "StrictHostKeyChecking=accept-new",
    "-o", "ConnectTimeout=10",
    "-o", "ServerAliveInterval=30",
    "-o", "ServerAliveCountMax=3",
    "-o", "LogLevel=ERROR",
]

TRANSIENT_INDICATORS = [
    "Connection refused", "Connection timed out", "Connection reset",
    "Broken pipe", "No route to host", "Network is unreachable",
    "ssh_exchange_identification", "Connection closed by remote host",
    "kex_exchange_identification",
]


class ExecFailure(MaestroError):
    """A single command invocation failed.

    exit_code is None when the command never produced an exit status of
    its own: the transport failed, the ssh client could not be spawned,
    or the call timed out.
    """

    def __init__(
        self,
        cause: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
    ):
        super().__init__(cause)
        self.cause = cause
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code

    @property
    def unreachable(self) -> bool:
        return self.exit_code is None


class HostStatus(Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


@dataclass
class HostState:
    status: HostStatus = HostStatus.UNKNOWN
    last_check: float = 0.0
    last_error: str = ""


def is_transient(failure: ExecFailure) -> bool:
    if not failure.unreachable:
        return False
    text = f"{failure.cause}\n{failure.stderr}"
    return any(ind in text for ind in TRANSIENT_INDICATORS)


def format_failure(failure: ExecFailure) -> str:
    parts = [failure.cause]
    if failure.stdout.strip():
        parts.append(failure.stdout.rstrip())
    if failure.stderr.strip():
        parts.append(f"[stderr]\n{failure.stderr.rstrip()}")
    if failure.exit_code not in (None, 0):
        parts.append(f"[exit code: {failure.exit_code}]")
    return "\n".join(parts)


def remote_command_line(argv: Sequence[str]) -> str:
    """Quote an argument vector into one POSIX shell command line."""
    if not argv:
        raise ValueError("empty command")
    return shlex.join(argv)


def build_ssh_argv(target: HostDescriptor, argv: Sequence[str]) -> list[str]:
    """Full client argv for running argv on target. Never contains a password."""
    args: list[str] = []
    if isinstance(target.auth, Password):
        args += ["sshpass", "-e", "ssh", *SSH_OPTIONS]
    else:
        args += ["ssh", "-o", "BatchMode=yes", *SSH_OPTIONS]
        if isinstance(target.auth, KeyFile):
            args += ["-i", str(target.auth.path)]
    if target.ssh_port is not None:
        args += ["-p", str(target.ssh_port)]
    args += ["--", target.destination, remote_command_line(argv)]
    return args


async def _async_run(
    args: list[str],
    timeout: int,
    env: dict[str, str] | None = None,
) -> tuple[int | None, str, str]:
    """Spawn args and collect (returncode, stdout, stderr).

    A missing binary reports COMMAND_NOT_FOUND, like a shell would.
    returncode is None when the call timed out.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            stdin=asyncio.subprocess.DEVNULL,
            env=env,
        )
    except FileNotFoundError as e:
        return COMMAND_NOT_FOUND, "", f"binary not found: {e}"
    except PermissionError as e:
        return COMMAND_NOT_FOUND, "", f"cannot execute: {e}"
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return None, "", f"timeout after {timeout}s"
    return (
        proc.returncode or 0,
        stdout_bytes.decode(errors="replace"),
        stderr_bytes.decode(errors="replace"),
    )


class CommandExecutor:
    """Runs argument vectors on fleet hosts and tracks per-host reachability."""

    def __init__(self, timeout: int = TIMEOUT):
        self.timeout = timeout
        self.hosts: dict[str, HostState] = {}

    def state(self, address: str) -> HostState:
        return self.hosts.setdefault(address, HostState())

    def _update_host_status(self, address: str, status: HostStatus, last_error: str = "") -> None:
        state = self.state(address)
        state.status = status
        state.last_check = time.time()
        if last_error:
            state.last_error = last_error

    async def execute(
        self,
        command: Sequence[str],
        target: HostDescriptor,
        timeout: int | None = None,
    ) -> str:
        """Run command on target and return its stdout.

        Raises ExecFailure on a non-zero exit status or transport failure.
        """
        timeout = timeout or self.timeout
        if target.is_local:
            return await self._local(command, target, timeout)
        return await self._remote(command, target, timeout)

    async def _local(self, command: Sequence[str], target: HostDescriptor, timeout: int) -> str:
        if not command:
            raise ValueError("empty command")
        rc, stdout, stderr = await _async_run(list(command), timeout=timeout)
        self._update_host_status(target.address, HostStatus.CONNECTED)
        if rc is None:
            raise ExecFailure(f"{command[0]}: {stderr}", stderr=stderr)
        if rc != 0:
            raise ExecFailure(
                f"{command[0]} exited with status {rc}",
                stdout=stdout, stderr=stderr, exit_code=rc,
            )
        return stdout

    async def _remote(self, command: Sequence[str], target: HostDescriptor, timeout: int) -> str:
        args = build_ssh_argv(target, command)
        if shutil.which(args[0]) is None:
            reason = f"{args[0]} is not installed on the control host"
            self._update_host_status(target.address, HostStatus.ERROR, last_error=reason)
            raise ExecFailure(f"[SSH error on {target.address}] {reason}")
        env = None
        if isinstance(target.auth, Password):
            env = os.environ.copy()
            env["SSHPASS"] = target.auth.secret

        logger.debug(f"{target.address}: {remote_command_line(command)}")
        rc, stdout, stderr = await _async_run(args, timeout=timeout, env=env)
        if rc is None or rc == SSH_TRANSPORT_ERROR:
            reason = stderr.strip() or f"ssh exited with status {rc}"
            self._update_host_status(target.address, HostStatus.ERROR, last_error=reason)
            raise ExecFailure(f"[SSH error on {target.address}] {reason}", stdout=stdout, stderr=stderr)
        self._update_host_status(target.address, HostStatus.CONNECTED)
        if rc != 0:
            raise ExecFailure(
                f"{command[0]} exited with status {rc} on {target.address}",
                stdout=stdout, stderr=stderr, exit_code=rc,
            )
        return stdout

    async def check(self, target: HostDescriptor) -> bool:
        """Connectivity check used by the status tool."""
        try:
            await self.execute(["true"], target, timeout=15)
        except ExecFailure as e:
            if e.unreachable:
                self._update_host_status(target.address, HostStatus.DISCONNECTED, last_error=e.cause)
                return False
        return True
