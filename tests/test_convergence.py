"""Tests for convergence.py."""
import pytest

from fakes import FakeExecutor, make_host, make_spec

from convergence import (
    ContainerNotRunning,
    DockerCliEngine,
    ReadinessState,
    ToolchainMissing,
    converge,
    ensure_ready,
)
from executor import ExecFailure


@pytest.fixture
def fake():
    return FakeExecutor()


@pytest.fixture
def engine(fake):
    return DockerCliEngine(fake, install_command="curl -fsSL https://get.docker.com | sh")


HOST = make_host("10.0.0.5")


# ---------------------------------------------------------------------------
# ensure_ready
# ---------------------------------------------------------------------------

class TestEnsureReady:
    @pytest.mark.asyncio
    async def test_already_installed(self, fake, engine):
        assert await ensure_ready(engine, HOST) is ReadinessState.READY
        assert fake.calls == [("10.0.0.5", ("docker", "--version"))]

    @pytest.mark.asyncio
    async def test_installs_then_reprobes(self, fake, engine):
        fake.missing_docker.add("10.0.0.5")
        assert await ensure_ready(engine, HOST) is ReadinessState.INSTALLED
        assert [argv[0:2] for _, argv in fake.calls] == [
            ("docker", "--version"),
            ("sh", "-c"),
            ("docker", "--version"),
        ]
        assert fake.calls[1][1][2] == "curl -fsSL https://get.docker.com | sh"

    @pytest.mark.asyncio
    async def test_install_without_effect(self, fake, engine):
        fake.missing_docker.add("10.0.0.5")
        fake.broken_install.add("10.0.0.5")
        with pytest.raises(ToolchainMissing, match="still missing"):
            await ensure_ready(engine, HOST)
        # exactly one install, exactly one re-probe
        assert fake.count("sh") == 1
        assert fake.count("docker", "--version") == 2

    @pytest.mark.asyncio
    async def test_install_command_fails(self, fake, engine):
        fake.missing_docker.add("10.0.0.5")

        async def failing_install(target):
            raise ExecFailure("sh exited with status 1", stderr="curl: (6) Could not resolve host", exit_code=1)

        engine.install = failing_install
        with pytest.raises(ToolchainMissing) as exc_info:
            await ensure_ready(engine, HOST)
        assert "Could not resolve host" in exc_info.value.stderr

    @pytest.mark.asyncio
    async def test_unreachable_host_skips_install(self, fake, engine):
        fake.down.add("10.0.0.5")
        with pytest.raises(ExecFailure) as exc_info:
            await ensure_ready(engine, HOST)
        assert not isinstance(exc_info.value, ToolchainMissing)
        assert exc_info.value.unreachable
        assert fake.count("sh") == 0


# ---------------------------------------------------------------------------
# converge
# ---------------------------------------------------------------------------

class TestConverge:
    @pytest.mark.asyncio
    async def test_step_order(self, fake, engine):
        await converge(engine, HOST, make_spec("web", "nginx"), 0)
        assert [argv for _, argv in fake.calls] == [
            ("docker", "pull", "nginx"),
            ("docker", "rm", "-f", "web-0"),
            ("docker", "run", "-d", "--name", "web-0", "nginx"),
            ("docker", "ps", "--filter", "name=^web-0$", "--format", "{{.Names}}"),
        ]
        assert fake.running["10.0.0.5"] == {"web-0"}

    @pytest.mark.asyncio
    async def test_idempotent(self, fake, engine):
        spec = make_spec("web", "nginx")
        await converge(engine, HOST, spec, 1)
        await converge(engine, HOST, spec, 1)
        assert fake.running["10.0.0.5"] == {"web-1"}

    @pytest.mark.asyncio
    async def test_remove_failure_ignored(self, fake, engine):
        fake.fail_remove = True
        await converge(engine, HOST, make_spec(), 0)
        assert fake.running["10.0.0.5"] == {"web-0"}

    @pytest.mark.asyncio
    async def test_pull_failure_is_terminal(self, fake, engine):
        fake.fail_pull.add("private/app")
        with pytest.raises(ExecFailure) as exc_info:
            await converge(engine, HOST, make_spec("app", "private/app"), 0)
        assert "pull access denied" in exc_info.value.stderr
        assert fake.count("docker", "run") == 0

    @pytest.mark.asyncio
    async def test_container_exits_immediately(self, fake, engine):
        fake.never_running.add("job-0")
        with pytest.raises(ContainerNotRunning, match="job-0"):
            await converge(engine, HOST, make_spec("job", "busybox"), 0)

    @pytest.mark.asyncio
    async def test_similar_names_do_not_satisfy_verification(self, fake, engine):
        fake.running["10.0.0.5"] = {"web-10"}
        fake.never_running.add("web-1")
        with pytest.raises(ContainerNotRunning):
            await converge(engine, HOST, make_spec("web"), 1)
