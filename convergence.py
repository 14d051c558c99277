"""
convergence.py — drive one host's container engine to the desired state.

ensure_ready() makes sure the engine exists on a host (installing it at
most once), and converge() takes one container instance through
pull -> remove -> run -> verify. Both talk to the host only through a
ContainerEngine, so any engine with these primitives can be wired in.
"""

import logging
from enum import Enum
from typing import Protocol

from executor import CommandExecutor, ExecFailure
from fleet_config import (
    DEFAULT_INSTALL_COMMAND,
    DEFAULT_STEP_TIMEOUT,
    ContainerSpec,
    HostDescriptor,
)

logger = logging.getLogger("maestro-deploy")


class ToolchainMissing(ExecFailure):
    """No container engine on the host, and installing one did not help."""


class ContainerNotRunning(ExecFailure):
    """The container was started but is not listed as running."""


class ReadinessState(Enum):
    """How a host came to have a usable container engine."""
    READY = "ready"
    INSTALLED = "installed"


class ContainerEngine(Protocol):
    async def version(self, target: HostDescriptor) -> str: ...

    async def install(self, target: HostDescriptor) -> None: ...

    async def pull(self, target: HostDescriptor, image: str) -> None: ...

    async def remove(self, target: HostDescriptor, name: str) -> None: ...

    async def run(self, target: HostDescriptor, name: str, image: str) -> None: ...

    async def list(self, target: HostDescriptor, name: str) -> list[str]: ...


class DockerCliEngine:
    """ContainerEngine backed by the docker CLI, reached through a CommandExecutor."""

    def __init__(
        self,
        executor: CommandExecutor,
        install_command: str = DEFAULT_INSTALL_COMMAND,
        step_timeout: int = DEFAULT_STEP_TIMEOUT,
    ):
        self.executor = executor
        self.install_command = install_command
        self.step_timeout = step_timeout

    async def version(self, target: HostDescriptor) -> str:
        out = await self.executor.execute(["docker", "--version"], target, timeout=30)
        return out.strip()

    async def install(self, target: HostDescriptor) -> None:
        await self.executor.execute(
            ["sh", "-c", self.install_command], target, timeout=self.step_timeout,
        )

    async def pull(self, target: HostDescriptor, image: str) -> None:
        await self.executor.execute(["docker", "pull", image], target, timeout=self.step_timeout)

    async def remove(self, target: HostDescriptor, name: str) -> None:
        await self.executor.execute(["docker", "rm", "-f", name], target, timeout=self.step_timeout)

    async def run(self, target: HostDescriptor, name: str, image: str) -> None:
        await self.executor.execute(
            ["docker", "run", "-d", "--name", name, image], target, timeout=self.step_timeout,
        )

    async def list(self, target: HostDescriptor, name: str) -> list[str]:
        # Anchored so that "web-1" does not also match "web-10".
        out = await self.executor.execute(
            ["docker", "ps", "--filter", f"name=^{name}$", "--format", "{{.Names}}"],
            target, timeout=self.step_timeout,
        )
        return [line.strip() for line in out.splitlines() if line.strip()]


async def ensure_ready(engine: ContainerEngine, target: HostDescriptor) -> ReadinessState:
    """Probe for the container engine on target, installing it once if absent.

    Returns READY when the engine was already there and INSTALLED when this
    call put it there. Raises the probe's ExecFailure unchanged when the host
    is unreachable, and ToolchainMissing when installation did not produce a
    working engine.
    """
    try:
        version = await engine.version(target)
    except ExecFailure as e:
        if e.unreachable:
            raise
        logger.warning(f"{target.address}: docker not found ({e.cause}), installing")
    else:
        logger.info(f"{target.address}: {version}")
        return ReadinessState.READY

    try:
        await engine.install(target)
    except ExecFailure as e:
        if e.unreachable:
            raise
        raise ToolchainMissing(
            f"docker installation failed on {target.address}: {e.cause}",
            stdout=e.stdout, stderr=e.stderr, exit_code=e.exit_code,
        ) from e

    try:
        version = await engine.version(target)
    except ExecFailure as e:
        if e.unreachable:
            raise
        raise ToolchainMissing(
            f"docker still missing on {target.address} after install",
            stdout=e.stdout, stderr=e.stderr, exit_code=e.exit_code,
        ) from e
    logger.info(f"{target.address}: installed {version}")
    return ReadinessState.INSTALLED


async def converge(
    engine: ContainerEngine,
    target: HostDescriptor,
    spec: ContainerSpec,
    instance_index: int,
) -> None:
    """Make "{container_name}-{instance_index}" run spec.image_name on target."""
    name = spec.instance_name(instance_index)

    await engine.pull(target, spec.image_name)

    try:
        await engine.remove(target, name)
    except ExecFailure as e:
        # usually "No such container"
        logger.debug(f"{target.address}: rm {name} ignored: {e.cause}")

    await engine.run(target, name, spec.image_name)

    names = await engine.list(target, name)
    if name not in names:
        raise ContainerNotRunning(
            f"Container '{name}' is not running on {target.address}",
            stdout="\n".join(names),
            exit_code=0,
        )
    logger.info(f"{target.address}: container '{name}' is running")
