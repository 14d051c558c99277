#!/usr/bin/env python3
"""
Maestro — multi-host container deployment + read-only reporting server.

On start-up Maestro loads the deployment document (maestro.yaml), makes
sure Docker is present on every host, converges every configured
container instance, prints a report, and then serves that report over MCP
(stdio or streamable-http) until interrupted.

The hub machine (address: localhost) executes commands directly; all
other hosts are reached via SSH.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path

from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from convergence import ContainerEngine, DockerCliEngine
from coordinator import DeploymentReport, FleetCoordinator, render_report
from executor import CommandExecutor, HostStatus
from fleet_config import ConfigError, MaestroConfig, load_config
from server_store import ServerStore, ServerSummary

logger = logging.getLogger("maestro")


# ---------------------------------------------------------------------------
# Application context
# ---------------------------------------------------------------------------

@dataclass
class AppContext:
    """Everything a run needs, built once at start-up and passed around."""

    config: MaestroConfig
    executor: CommandExecutor
    engine: ContainerEngine
    coordinator: FleetCoordinator
    store: ServerStore
    latest_report: DeploymentReport | None = None
    deploy_task: asyncio.Task | None = field(default=None, repr=False)
    _cancel: asyncio.Event | None = field(default=None, repr=False)

    @classmethod
    def from_config(
        cls,
        config: MaestroConfig,
        engine: ContainerEngine | None = None,
        store: ServerStore | None = None,
    ) -> "AppContext":
        executor = CommandExecutor()
        if engine is None:
            engine = DockerCliEngine(
                executor,
                install_command=config.install_command,
                step_timeout=config.step_timeout,
            )
        return cls(
            config=config,
            executor=executor,
            engine=engine,
            coordinator=FleetCoordinator(
                engine,
                max_concurrency=config.max_concurrency,
                retries=config.retries,
            ),
            store=store or ServerStore(config.database_url),
        )

    @property
    def deploying(self) -> bool:
        return self.deploy_task is not None and not self.deploy_task.done()

    async def run_deployment(self) -> DeploymentReport:
        self._cancel = asyncio.Event()
        report = await self.coordinator.deploy(
            self.config.hosts, self.config.containers, self.config.policy, cancel=self._cancel,
        )
        self.latest_report = report
        await asyncio.to_thread(self.store.record_report, report)
        return report

    def start_deployment(self) -> bool:
        """Kick off a background run. Returns False if one is already running."""
        if self.deploying:
            return False
        self.deploy_task = asyncio.create_task(self.run_deployment())
        return True

    def cancel_deployment(self) -> None:
        if self._cancel is not None and not self._cancel.is_set():
            logger.warning("maestro: cancellation requested, letting in-flight units finish")
            self._cancel.set()

    async def wait_deployment(self) -> None:
        if self.deploy_task is None:
            return
        try:
            await self.deploy_task
        except Exception:
            logger.exception("maestro: background deployment failed")

    def get_servers(self) -> list[ServerSummary]:
        return self.store.list_servers()

    def get_latest_report(self) -> DeploymentReport | None:
        return self.latest_report


# ---------------------------------------------------------------------------
# Reporting routes (plain HTTP JSON)
# ---------------------------------------------------------------------------

def reporting_routes(app: AppContext) -> list[Route]:
    async def servers(request: Request) -> Response:
        summaries = await asyncio.to_thread(app.get_servers)
        return JSONResponse([s.to_dict() for s in summaries])

    async def report(request: Request) -> Response:
        latest = app.get_latest_report()
        if latest is None:
            return JSONResponse(
                {"error": "not_found", "detail": "no deployment has finished yet"},
                status_code=404,
            )
        body = latest.to_dict()
        body["deploying"] = app.deploying
        return JSONResponse(body)

    return [
        Route("/servers", servers, methods=["GET"]),
        Route("/report", report, methods=["GET"]),
    ]


# ---------------------------------------------------------------------------
# MCP server
# ---------------------------------------------------------------------------

def _build_instructions(config: MaestroConfig) -> str:
    host_lines = []
    for host in config.hosts:
        local_tag = " LOCAL (direct execution, no SSH)." if host.is_local else ""
        port = f":{host.ssh_port}" if host.ssh_port else ""
        host_lines.append(f"  {host.address}{port}{local_tag}")
    container_lines = [
        f"  {spec.container_name:16s} {spec.image_name} x{spec.instance_count}"
        for spec in config.containers
    ]
    return (
        "Maestro — multi-host container deployment.\n"
        "\n"
        "Hosts:\n"
        + "\n".join(host_lines) + "\n"
        "\n"
        "Containers:\n"
        + "\n".join(container_lines) + "\n"
        "\n"
        "Tools:\n"
        "  maestro_report   — Summary of the latest deployment run.\n"
        "  maestro_servers  — Per-host server summaries (JSON).\n"
        "  maestro_status   — Check connectivity of all hosts.\n"
        "  maestro_deploy   — Start a new deployment run in the background.\n"
        "\n"
        "HTTP: GET /servers and GET /report return the same data as JSON.\n"
    )


def build_server(app: AppContext) -> FastMCP:
    mcp = FastMCP(
        "maestro",
        instructions=_build_instructions(app.config),
        transport_security=TransportSecuritySettings(
            enable_dns_rebinding_protection=False,
        ),
    )

    for route in reporting_routes(app):
        mcp.custom_route(route.path, methods=["GET"])(route.endpoint)

    @mcp.tool()
    async def maestro_report() -> str:
        """Summarize the latest deployment run: counts, per-host tallies, and failures."""
        latest = app.get_latest_report()
        if latest is None:
            return "[no deployment has finished yet]"
        text = render_report(latest)
        if app.deploying:
            text += "\n[a new deployment is in progress]"
        return text

    @mcp.tool()
    async def maestro_servers() -> str:
        """List per-host server summaries (name, status, players, cpu, memory)."""
        summaries = await asyncio.to_thread(app.get_servers)
        return json.dumps([s.to_dict() for s in summaries], indent=2)

    @mcp.tool()
    async def maestro_deploy() -> str:
        """Start a new deployment run in the background.

        Poll maestro_report for the outcome.
        """
        started = app.start_deployment()
        return json.dumps({"status": "started" if started else "already_running"})

    @mcp.tool()
    async def maestro_status() -> str:
        """Check connectivity status of every deployment host."""
        lines = ["Maestro Status", "=" * 55]

        async def _check_one(address: str) -> str:
            host = app.config.host(address)
            if host.is_local:
                return f"  {address:20s} ✓ LOCAL"
            alive = await app.executor.check(host)
            state = app.executor.state(address)
            line = f"  {address:20s} {'✓ CONNECTED' if alive else '✗ OFFLINE'}"
            if not alive and state.last_error:
                line += f"  -- {state.last_error}"
            return line

        results = await asyncio.gather(*[_check_one(h.address) for h in app.config.hosts])
        lines.extend(results)
        reachable = sum(
            1 for h in app.config.hosts
            if h.is_local or app.executor.state(h.address).status == HostStatus.CONNECTED
        )
        lines.append("=" * 55)
        lines.append(f"{reachable}/{len(app.config.hosts)} hosts available")
        return "\n".join(lines)

    return mcp


class _RequestLogMiddleware:
    def __init__(self, inner: ASGIApp):
        self.inner = inner

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            hdrs = dict(scope.get("headers", []))
            ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
            logger.info("recv: %s %s ua=%s", scope.get("method", "?"), scope.get("path", "?"), ua[:60])
        await self.inner(scope, receive, send)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

async def initial_deployment(app: AppContext, out=None) -> DeploymentReport:
    """Run the start-up deployment with SIGINT/SIGTERM wired to cancellation."""
    loop = asyncio.get_running_loop()
    handled = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, app.cancel_deployment)
            handled.append(sig)
        except (NotImplementedError, RuntimeError):
            pass
    try:
        report = await app.run_deployment()
    finally:
        for sig in handled:
            loop.remove_signal_handler(sig)
    print(render_report(report), file=out or sys.stdout)
    if report.toolchain_missing_everywhere:
        raise SystemExit("maestro: no host has a usable container engine, giving up")
    return report


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    # Audit logger — JSON-lines to ~/.maestro/audit.log
    audit_log_path = Path.home() / ".maestro" / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("maestro-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Maestro deployment server",
        epilog="Ctrl-C or SIGTERM during the start-up deployment cancels it; "
               "maestro then exits after printing the report instead of serving.",
    )
    parser.add_argument("--config", type=Path, default=None,
                        help="deployment document (default: $MAESTRO_CONFIG or maestro.yaml)")
    parser.add_argument("--transport", choices=["stdio", "streamable-http"], default="streamable-http")
    parser.add_argument("--port", type=int, default=8222)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--once", action="store_true",
                        help="deploy, print the report, and exit without serving")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        raise SystemExit(f"maestro: {e}")

    _setup_logging()
    app = AppContext.from_config(config)

    if args.once:
        asyncio.run(initial_deployment(app))
        return

    mcp = build_server(app)

    if args.transport == "streamable-http":
        import uvicorn

        http_app = _RequestLogMiddleware(mcp.streamable_http_app())
        uv_config = uvicorn.Config(http_app, host=args.host, port=args.port, log_level="info")
        server = uvicorn.Server(uv_config)

        async def _serve_with_maestro_lifecycle() -> None:
            report = await initial_deployment(app)
            if report.cancelled:
                logger.info("maestro: start-up deployment interrupted, not serving")
                return
            logger.info(f"maestro: starting HTTP server on {args.host}:{args.port}")
            try:
                await server.serve()
            finally:
                logger.info("maestro: shutting down")
                app.cancel_deployment()
                await app.wait_deployment()

        asyncio.run(_serve_with_maestro_lifecycle())
    else:
        # stdout belongs to the MCP stdio transport
        report = asyncio.run(initial_deployment(app, out=sys.stderr))
        if report.cancelled:
            logger.info("maestro: start-up deployment interrupted, not serving")
            return
        mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
