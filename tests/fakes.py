"""In-memory stand-ins for the executor, simulating docker on each host."""
import asyncio
import sys
from collections.abc import Sequence
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from executor import ExecFailure, HostState
from fleet_config import ContainerSpec, HostDescriptor, KeyFile, Password


def make_host(address: str, **kwargs) -> HostDescriptor:
    kwargs.setdefault("username", "deploy")
    return HostDescriptor(address=address, **kwargs)


def make_spec(name: str = "web", image: str = "nginx", instances: int = 1) -> ContainerSpec:
    return ContainerSpec(image_name=image, container_name=name, instance_count=instances)


class FakeExecutor:
    """Records every call and plays the part of docker on every host.

    down:           addresses whose transport always fails
    missing_docker: addresses where docker is not installed yet
    broken_install: addresses where the install script does nothing
    fail_pull:      images whose pull fails
    never_running:  container names that exit right after `docker run`
    """

    def __init__(self):
        self.calls: list[tuple[str, tuple[str, ...]]] = []
        self.down: set[str] = set()
        self.missing_docker: set[str] = set()
        self.broken_install: set[str] = set()
        self.fail_pull: set[str] = set()
        self.fail_remove = False
        self.never_running: set[str] = set()
        self.running: dict[str, set[str]] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.delay = 0.0
        self.hosts: dict[str, HostState] = {}

    def state(self, address: str) -> HostState:
        return self.hosts.setdefault(address, HostState())

    def count(self, *prefix: str, address: str | None = None) -> int:
        return sum(
            1 for addr, argv in self.calls
            if argv[:len(prefix)] == prefix and (address is None or addr == address)
        )

    def docker_calls(self, address: str | None = None) -> int:
        verbs = ("pull", "rm", "run", "ps")
        return sum(
            1 for addr, argv in self.calls
            if argv[0] == "docker" and argv[1] in verbs and (address is None or addr == address)
        )

    async def execute(
        self,
        command: Sequence[str],
        target: HostDescriptor,
        timeout: int | None = None,
    ) -> str:
        argv = tuple(command)
        address = target.address
        self.calls.append((address, argv))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return self._respond(address, argv)
        finally:
            self.in_flight -= 1

    def _respond(self, address: str, argv: tuple[str, ...]) -> str:
        if address in self.down:
            raise ExecFailure(
                f"[SSH error on {address}] ssh: connect to host {address} port 22: Connection refused",
                stderr=f"ssh: connect to host {address} port 22: Connection refused",
            )
        running = self.running.setdefault(address, set())

        if argv[0] == "sh":
            if address not in self.broken_install:
                self.missing_docker.discard(address)
            return "installed\n"
        if argv[0] != "docker":
            return ""
        if address in self.missing_docker:
            raise ExecFailure(
                "docker exited with status 127",
                stderr="sh: docker: not found", exit_code=127,
            )

        verb = argv[1]
        if verb == "--version":
            return "Docker version 27.3.1, build ce12230\n"
        if verb == "pull":
            if argv[2] in self.fail_pull:
                raise ExecFailure(
                    "docker exited with status 1",
                    stderr=f"Error response from daemon: pull access denied for {argv[2]}",
                    exit_code=1,
                )
            return f"Status: Image is up to date for {argv[2]}\n"
        if verb == "rm":
            name = argv[-1]
            if self.fail_remove or name not in running:
                raise ExecFailure(
                    "docker exited with status 1",
                    stderr=f"Error response from daemon: No such container: {name}",
                    exit_code=1,
                )
            running.discard(name)
            return f"{name}\n"
        if verb == "run":
            name = argv[argv.index("--name") + 1]
            if name in running:
                raise ExecFailure(
                    "docker exited with status 125",
                    stderr=f'Conflict. The container name "/{name}" is already in use',
                    exit_code=125,
                )
            if name not in self.never_running:
                running.add(name)
            return "3f4e1c2d9a8b\n"
        if verb == "ps":
            wanted = argv[argv.index("--filter") + 1].removeprefix("name=^").removesuffix("$")
            return "".join(f"{n}\n" for n in sorted(running) if n == wanted)
        raise AssertionError(f"unexpected docker call: {argv}")

    async def check(self, target: HostDescriptor) -> bool:
        return target.address not in self.down


__all__ = ["FakeExecutor", "make_host", "make_spec", "KeyFile", "Password"]
