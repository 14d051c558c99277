"""Tests for server_store.py."""
import pytest

from fakes import FakeExecutor, make_host, make_spec

import server_store
from convergence import DockerCliEngine
from coordinator import FleetCoordinator
from fleet_config import ParallelismPolicy
from server_store import ServerStatus, ServerStore, ServerSummary


@pytest.fixture
def store():
    return ServerStore("sqlite://")


class TestServerStore:
    def test_empty(self, store):
        assert store.list_servers() == []

    def test_upsert_inserts_then_updates(self, store):
        store.upsert("10.0.0.1", ServerStatus.DEPLOYED, name="eu-west-1")
        store.upsert("10.0.0.1", ServerStatus.FAILED)
        assert store.list_servers() == [
            ServerSummary(address="10.0.0.1", name="eu-west-1", status="failed"),
        ]

    def test_name_defaults_to_address(self, store):
        store.upsert("10.0.0.2", ServerStatus.DEPLOYED)
        assert store.list_servers()[0].name == "10.0.0.2"

    def test_metrics(self, store):
        store.upsert("10.0.0.1", ServerStatus.DEPLOYED)
        store.update_metrics("10.0.0.1", players=42, cpu=37.5, memory=61.0)
        summary = store.list_servers()[0]
        assert (summary.players, summary.cpu, summary.memory) == (42, 37.5, 61.0)

    def test_metrics_for_unknown_server(self, store):
        with pytest.raises(KeyError):
            store.update_metrics("nope", players=1, cpu=0.0, memory=0.0)

    def test_sorted_by_address(self, store):
        for address in ("10.0.0.3", "10.0.0.1", "10.0.0.2"):
            store.upsert(address, ServerStatus.DEPLOYED)
        assert [s.address for s in store.list_servers()] == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def test_file_database_persists(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'maestro.db'}"
        ServerStore(url).upsert("10.0.0.1", ServerStatus.DEPLOYED)
        assert [s.address for s in ServerStore(url).list_servers()] == ["10.0.0.1"]


class TestRecordReport:
    @pytest.mark.asyncio
    async def test_statuses_per_host(self, store):
        fake = FakeExecutor()
        fake.down.add("10.0.0.3")
        fake.fail_pull.add("private/app")
        hosts = [make_host("10.0.0.1"), make_host("10.0.0.2"), make_host("10.0.0.3")]
        specs = [make_spec("web", "nginx"), make_spec("app", "private/app")]
        report = await FleetCoordinator(DockerCliEngine(fake)).deploy(
            hosts, specs, ParallelismPolicy.SEQUENTIAL,
        )
        store.record_report(report)
        statuses = {s.address: s.status for s in store.list_servers()}
        assert statuses == {
            "10.0.0.1": ServerStatus.DEGRADED,
            "10.0.0.2": ServerStatus.DEGRADED,
            "10.0.0.3": ServerStatus.UNREACHABLE,
        }

    @pytest.mark.asyncio
    async def test_all_deployed_and_all_failed(self, store):
        fake = FakeExecutor()
        fake.fail_pull.add("private/app")
        report = await FleetCoordinator(DockerCliEngine(fake)).deploy(
            [make_host("10.0.0.1")], [make_spec("web", "nginx")], ParallelismPolicy.SEQUENTIAL,
        )
        store.record_report(report)
        report = await FleetCoordinator(DockerCliEngine(fake)).deploy(
            [make_host("10.0.0.2")], [make_spec("app", "private/app")], ParallelismPolicy.SEQUENTIAL,
        )
        store.record_report(report)
        statuses = {s.address: s.status for s in store.list_servers()}
        assert statuses == {"10.0.0.1": ServerStatus.DEPLOYED, "10.0.0.2": ServerStatus.FAILED}

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_run(self, store, monkeypatch):
        fake = FakeExecutor()
        hosts = [make_host("10.0.0.1"), make_host("10.0.0.2")]
        coordinator = FleetCoordinator(DockerCliEngine(fake))
        store.record_report(await coordinator.deploy(hosts, [make_spec("web", "nginx")], ParallelismPolicy.SEQUENTIAL))

        fake.fail_pull.add("nginx")
        report = await coordinator.deploy(hosts, [make_spec("web", "nginx")], ParallelismPolicy.SEQUENTIAL)
        real_upsert = server_store._upsert_row

        def upsert_until_second_host(session, address, status, name=None):
            if address == "10.0.0.2":
                raise RuntimeError("disk I/O error")
            real_upsert(session, address, status, name)

        monkeypatch.setattr(server_store, "_upsert_row", upsert_until_second_host)
        with pytest.raises(RuntimeError, match="disk I/O error"):
            store.record_report(report)
        statuses = {s.address: s.status for s in store.list_servers()}
        assert statuses == {"10.0.0.1": ServerStatus.DEPLOYED, "10.0.0.2": ServerStatus.DEPLOYED}
