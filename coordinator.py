"""
coordinator.py — fan container convergence out across the fleet.

Every (host, container spec, instance) triple is one DeploymentUnit.
Units run one at a time in enumeration order (SEQUENTIAL) or as
concurrent tasks behind a semaphore (PARALLEL). Readiness is probed once
per host no matter how many units target it, and every unit reports
exactly once into the DeploymentReport, whatever happens to its siblings.
"""

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from convergence import ContainerEngine, ReadinessState, ToolchainMissing, converge, ensure_ready
from executor import ExecFailure, format_failure, is_transient
from fleet_config import ContainerSpec, HostDescriptor, MaestroError, ParallelismPolicy

logger = logging.getLogger("maestro-deploy")
audit_logger = logging.getLogger("maestro-audit")

RETRY_BACKOFF_BASE = 1.0


class DeploymentCancelled(ExecFailure):
    """The run was cancelled before this unit was dispatched."""


def _audit(event: str, **kwargs: Any) -> None:
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Units, results, report
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeploymentUnit:
    host: HostDescriptor
    spec: ContainerSpec
    instance_index: int

    @property
    def instance_name(self) -> str:
        return self.spec.instance_name(self.instance_index)

    def describe(self) -> str:
        return f"{self.host.address}/{self.instance_name}"


@dataclass(frozen=True)
class ExecutionResult:
    unit: DeploymentUnit
    error: MaestroError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DeploymentReport:
    total: int
    succeeded: int = 0
    failed: list[tuple[DeploymentUnit, MaestroError]] = field(default_factory=list)
    unready_hosts: dict[str, MaestroError] = field(default_factory=dict)
    installed_hosts: tuple[str, ...] = ()
    hosts: tuple[str, ...] = ()
    cancelled: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def finalized(self) -> bool:
        return self.finished_at is not None

    @property
    def toolchain_missing_everywhere(self) -> bool:
        if not self.hosts:
            return False
        return all(
            isinstance(self.unready_hosts.get(address), ToolchainMissing)
            for address in self.hosts
        )

    def per_host(self) -> dict[str, dict[str, int]]:
        """Succeeded/failed unit counts for every host in the run."""
        tallies = {address: {"succeeded": 0, "failed": 0} for address in self.hosts}
        for unit, _ in self.failed:
            tallies.setdefault(unit.host.address, {"succeeded": 0, "failed": 0})["failed"] += 1
        per_host_total = self.total // len(self.hosts) if self.hosts else 0
        for address, tally in tallies.items():
            tally["succeeded"] = per_host_total - tally["failed"]
        return tallies

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": [
                {
                    "host": unit.host.address,
                    "container": unit.spec.container_name,
                    "instance": unit.instance_name,
                    "error": type(err).__name__,
                    "cause": getattr(err, "cause", str(err)),
                    "stderr": getattr(err, "stderr", ""),
                }
                for unit, err in self.failed
            ],
            "hosts": self.per_host(),
            "unready_hosts": {addr: str(err) for addr, err in self.unready_hosts.items()},
            "installed_hosts": list(self.installed_hosts),
            "cancelled": self.cancelled,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class ReportAggregator:
    """Owns a DeploymentReport while results are still arriving."""

    def __init__(self, total: int, hosts: Sequence[HostDescriptor]):
        self.report = DeploymentReport(total=total, hosts=tuple(h.address for h in hosts))
        self._lock = asyncio.Lock()
        self._received = 0

    async def add(self, result: ExecutionResult) -> None:
        async with self._lock:
            if self.report.finalized:
                raise RuntimeError("report already finalized")
            self._received += 1
            if result.ok:
                self.report.succeeded += 1
            else:
                self.report.failed.append((result.unit, result.error))
            _audit(
                "unit_result",
                host=result.unit.host.address,
                instance=result.unit.instance_name,
                ok=result.ok,
                error=None if result.ok else str(result.error),
            )

    async def finalize(
        self,
        unready_hosts: dict[str, MaestroError],
        cancelled: bool,
        installed_hosts: Sequence[str] = (),
    ) -> DeploymentReport:
        async with self._lock:
            if self._received != self.report.total:
                raise RuntimeError(
                    f"finalize with {self._received}/{self.report.total} results"
                )
            self.report.unready_hosts = dict(unready_hosts)
            self.report.installed_hosts = tuple(installed_hosts)
            self.report.cancelled = cancelled
            self.report.finished_at = datetime.now(timezone.utc)
            return self.report


def expand_units(
    hosts: Sequence[HostDescriptor],
    specs: Sequence[ContainerSpec],
) -> list[DeploymentUnit]:
    """Cartesian product, host-major then spec then instance index."""
    return [
        DeploymentUnit(host, spec, index)
        for host in hosts
        for spec in specs
        for index in range(spec.instance_count)
    ]


# ---------------------------------------------------------------------------
# Readiness single-flight
# ---------------------------------------------------------------------------

class ReadinessCache:
    """One readiness probe per host address for the lifetime of a run.

    The first unit for a host starts the probe; later units await the same
    task, so they see the same outcome and the same exception object.
    """

    def __init__(self, engine: ContainerEngine):
        self.engine = engine
        self._probes: dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()

    async def ensure(self, target: HostDescriptor) -> None:
        async with self._lock:
            probe = self._probes.get(target.address)
            if probe is None:
                probe = asyncio.create_task(ensure_ready(self.engine, target))
                self._probes[target.address] = probe
        # shielded: a cancelled waiter must not cancel the probe for the others
        await asyncio.shield(probe)

    def failures(self) -> dict[str, MaestroError]:
        out: dict[str, MaestroError] = {}
        for address, probe in self._probes.items():
            if probe.done() and not probe.cancelled() and probe.exception() is not None:
                out[address] = probe.exception()
        return out

    def installed(self) -> list[str]:
        """Addresses where this run had to install the engine."""
        return [
            address for address, probe in self._probes.items()
            if probe.done() and not probe.cancelled() and probe.exception() is None
            and probe.result() is ReadinessState.INSTALLED
        ]


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class FleetCoordinator:
    def __init__(
        self,
        engine: ContainerEngine,
        max_concurrency: int = 0,
        retries: int = 0,
    ):
        self.engine = engine
        self.max_concurrency = max_concurrency
        self.retries = retries

    async def deploy(
        self,
        hosts: Sequence[HostDescriptor],
        specs: Sequence[ContainerSpec],
        policy: ParallelismPolicy,
        cancel: asyncio.Event | None = None,
    ) -> DeploymentReport:
        """Converge every unit and return the finalized report.

        Setting cancel stops new units from starting; units already running
        finish and report, and the rest are recorded as DeploymentCancelled.
        """
        cancel = cancel or asyncio.Event()
        units = expand_units(hosts, specs)
        aggregator = ReportAggregator(total=len(units), hosts=hosts)
        readiness = ReadinessCache(self.engine)
        logger.info(
            f"deploying {len(units)} units to {len(hosts)} hosts ({policy.value})"
        )

        if policy is ParallelismPolicy.SEQUENTIAL:
            for unit in units:
                await aggregator.add(await self._dispatch(unit, readiness, cancel))
        else:
            if self.max_concurrency > 0:
                gate: Any = asyncio.Semaphore(self.max_concurrency)
            else:
                gate = contextlib.nullcontext()

            async def _guarded(unit: DeploymentUnit) -> None:
                async with gate:
                    result = await self._dispatch(unit, readiness, cancel)
                await aggregator.add(result)

            await asyncio.gather(*(_guarded(unit) for unit in units))

        report = await aggregator.finalize(
            readiness.failures(), cancelled=cancel.is_set(), installed_hosts=readiness.installed(),
        )
        logger.info(
            f"deployment finished: {report.succeeded}/{report.total} succeeded, "
            f"{len(report.failed)} failed"
        )
        return report

    async def _dispatch(
        self,
        unit: DeploymentUnit,
        readiness: ReadinessCache,
        cancel: asyncio.Event,
    ) -> ExecutionResult:
        if cancel.is_set():
            return ExecutionResult(unit, DeploymentCancelled(
                f"{unit.describe()}: run cancelled before dispatch"
            ))
        try:
            await readiness.ensure(unit.host)
            await self._converge_with_retry(unit)
        except ExecFailure as e:
            logger.warning(f"{unit.describe()}: failed: {e.cause}")
            return ExecutionResult(unit, e)
        except Exception as exc:
            logger.exception(f"{unit.describe()}: unexpected error")
            return ExecutionResult(unit, ExecFailure(f"unexpected error: {exc}"))
        return ExecutionResult(unit)

    async def _converge_with_retry(self, unit: DeploymentUnit) -> None:
        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                await converge(self.engine, unit.host, unit.spec, unit.instance_index)
                return
            except ExecFailure as e:
                if attempt == attempts or not is_transient(e):
                    raise
                backoff = RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
                logger.warning(
                    f"{unit.describe()}: transient failure (attempt {attempt}/{attempts}): "
                    f"{e.cause}; retrying in {backoff}s"
                )
                await asyncio.sleep(backoff)


def render_report(report: DeploymentReport) -> str:
    """Operator-facing summary of a finished run."""
    lines = ["Deployment Summary", "=" * 55]
    for address, tally in report.per_host().items():
        mark = "✓" if tally["failed"] == 0 else "✗"
        lines.append(
            f"  {address:20s} {mark} {tally['succeeded']} ok, {tally['failed']} failed"
            + (" (docker installed)" if address in report.installed_hosts else "")
        )
    lines.append("=" * 55)
    lines.append(f"{report.succeeded}/{report.total} units succeeded, {len(report.failed)} failed")
    if report.cancelled:
        lines.append("[run was cancelled]")
    for unit, err in report.failed:
        lines.append("")
        lines.append(f"✗ {unit.host.address} {unit.instance_name} ({type(err).__name__})")
        detail = format_failure(err) if isinstance(err, ExecFailure) else str(err)
        lines.extend(f"    {line}" for line in detail.splitlines())
    return "\n".join(lines)
