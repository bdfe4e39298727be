"""
EnvOps Orchestrator: command line entry point.

Commands:
  create <branch>     Provision the environment for a branch and wait for the outcome
  delete <branch>     Tear the environment down and wait for the outcome
  simulate            Run a mock-mode walkthrough (create, coalesce, cancel, stuck delete)
  serve               Start the HTTP trigger/status API

Usage:
  python main.py create feature/user-auth
  ENVOPS_MOCK_MODE=false ENVOPS_KUBECONFIG=~/.kube/config python main.py delete feature/user-auth
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config.settings import OrchestratorSettings, PollPolicy
from framework.agent_framework import AgentFramework, EventType
from framework.models import BranchEventKind, BranchRef, Phase
from agents.environment import EnvironmentAgent
from utils.alerting import AlertManager
from utils.cluster_client import ClusterClient
from utils.exposure_provider import ExposureProvider
from utils.migration_tool import MigrationTool
from utils.state_store import StateStore

logger = logging.getLogger("envops.main")


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("ENVOPS_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def run_single(kind: BranchEventKind, branch: str) -> int:
    from app.backend.services.orchestrator_service import build_agent

    agent = build_agent(OrchestratorSettings.from_env())
    report = await agent.on_branch_event(BranchRef(name=branch, event=kind))
    print(report)
    for phase, seconds in report.duration_by_phase.items():
        print(f"  {phase:<16} {seconds:8.1f}s")
    if report.external_endpoint:
        print(f"  endpoint: {report.external_endpoint}")
    return 0 if report.final_phase != Phase.FAILED else 1


async def run_simulation() -> int:
    """Mock-mode walkthrough of both workflows with shortened budgets."""
    print("\n" + "=" * 72)
    print("  ENVOPS: ephemeral environment lifecycle (mock mode)")
    print("=" * 72 + "\n")

    settings = OrchestratorSettings()
    settings.ready_poll = PollPolicy(interval_seconds=0.05, max_wait_seconds=1.0)
    settings.endpoint_poll = PollPolicy(interval_seconds=0.05, max_wait_seconds=1.0)
    settings.gone_grace_poll = PollPolicy(interval_seconds=0.05, max_wait_seconds=0.5)
    settings.gone_final_poll = PollPolicy(interval_seconds=0.05, max_wait_seconds=1.0)

    cluster = ClusterClient(mock_mode=True, ready_after_reads=3, gone_after_reads=2)
    framework = AgentFramework(mock_mode=True)
    agent = EnvironmentAgent(
        cluster,
        ExposureProvider(mock_mode=True, cluster=cluster, assign_after_reads=2),
        MigrationTool(mock_mode=True),
        StateStore(),
        AlertManager(mock_mode=True),
        settings=settings,
    )
    framework.register_agent(agent)

    print("--- 1. Two branches created, one of them twice (coalesced) ---")
    summary = await framework.run_full_cycle({"events": [
        BranchRef("feature/user-auth", BranchEventKind.CREATED),
        BranchRef("feature/user-auth", BranchEventKind.CREATED),
        BranchRef("release/2024.10-hotfix", BranchEventKind.CREATED),
    ]})
    for result in summary["results"][agent.name]:
        print(f"  {result}")

    print("\n--- 2. Delete arrives while a create is still waiting for the database ---")
    cluster.ready_after_reads = 1000
    create = agent.submit(BranchRef("feature/cancelled", BranchEventKind.CREATED))
    await asyncio.sleep(0.2)
    deleted = await agent.on_branch_event(BranchRef("feature/cancelled", BranchEventKind.DELETED))
    print(f"  create -> {await create}")
    print(f"  delete -> {deleted}")
    cluster.ready_after_reads = 3

    print("\n--- 3. Delete of an environment wedged in Terminating ---")
    cluster.stuck_namespaces.add(agent.environment_id_for("feature/user-auth"))
    report = await agent.on_branch_event(BranchRef("feature/user-auth", BranchEventKind.DELETED))
    print(f"  {report} (recover calls: {len(framework.get_event_log(EventType.RECOVERY_EXECUTED))})")

    print("\n--- Environments ---")
    for state in agent.store.list_states():
        print(f"  {state.environment_id:<28} {state.phase.value:<10} {state.external_endpoint or ''}")
    print(f"\n  alerts: {agent.alerts.get_alert_summary()}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="envops", description="Ephemeral environment lifecycle orchestrator")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="provision the environment for a branch")
    create.add_argument("branch")
    delete = sub.add_parser("delete", help="tear down the environment for a branch")
    delete.add_argument("branch")
    sub.add_parser("simulate", help="mock-mode walkthrough")
    serve = sub.add_parser("serve", help="start the HTTP API")
    serve.add_argument("--host", default=os.getenv("ENVOPS_HOST", "0.0.0.0"))
    serve.add_argument("--port", type=int, default=int(os.getenv("ENVOPS_PORT", "8000")))
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    if args.command == "serve":
        import uvicorn
        uvicorn.run("app.backend.main:app", host=args.host, port=args.port)
        return 0
    if args.command == "simulate":
        return asyncio.run(run_simulation())
    kind = BranchEventKind.CREATED if args.command == "create" else BranchEventKind.DELETED
    return asyncio.run(run_single(kind, args.branch))


if __name__ == "__main__":
    sys.exit(main())
