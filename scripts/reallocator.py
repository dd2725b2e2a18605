#!/usr/bin/env python
"""Yield Reallocator CLI - manual control of the reallocation pipeline.

This script provides manual control over the reallocation service:
- check: Health check (ledger, yields, record store)
- positions: A user's positions with current APY
- evaluate: Decision for one position
- optimize: Reallocate one position (--dry-run prints the plan)
- optimize-all: Run the batch driver once
- stats: Record store statistics and a user's history
- run: Start the periodic scheduler
- simulate: Run one full cycle against the local sandbox

Usage:
    python scripts/reallocator.py check
    python scripts/reallocator.py positions 0xabc...
    python scripts/reallocator.py optimize 0xabc... 0 --dry-run
    python scripts/reallocator.py run
    python scripts/reallocator.py simulate
"""

import argparse
import json
import signal
import sys
import threading
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from rich.console import Console
from rich.table import Table

from src.api.reallocation_api import ReallocationAPI
from src.orchestration.scheduler import ReallocationScheduler
from src.orchestration.workflows import ReallocationWorkflow
from src.utils.config import Config, load_reallocator_config
from src.utils.logging import get_logger, setup_logging
from src.utils.units import format_units

logger = get_logger(__name__)
console = Console()


def create_workflow(config: Config, secrets: dict, mode: str = None) -> ReallocationWorkflow:
    """Build the workflow, optionally overriding ``ledger.mode``."""
    if mode:
        data = config.to_dict()
        data["ledger"] = dict(data.get("ledger") or {}, mode=mode)
        config = Config(data)
    return ReallocationWorkflow.from_config(config, secrets)


def resolve_user(workflow: ReallocationWorkflow, value: str) -> str:
    """Accept a sandbox user name in place of an address."""
    if workflow.sandbox and value in workflow.sandbox.users:
        return workflow.sandbox.users[value]
    return value


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def check_command(workflow: ReallocationWorkflow, args) -> int:
    """Execute health check command."""
    print("\n" + "=" * 60)
    print("REALLOCATOR HEALTH CHECK")
    print("=" * 60)

    try:
        result = workflow.health_check()
    except Exception as e:
        print(f"\n❌ Health Check FAILED: {e}")
        return 1

    yields = result["yields"]
    print("\n✅ Health Check PASSED")
    print(f"  Whitelisted vaults: {len(result['whitelisted_vaults'])}")
    print(f"  Users with active positions: {result['active_users']}")
    print(f"  Average APY: {yields['average_apy']:.2f}%  Best: {yields['highest_apy']:.2f}%")
    if result["records"] is not None:
        print(f"  Recorded optimizations: {result['records']['total_optimizations']}")
    return 0


def positions_command(workflow: ReallocationWorkflow, args) -> int:
    api = ReallocationAPI(workflow)
    user = resolve_user(workflow, args.user)
    positions = api.get_user_positions(user)

    table = Table(title=f"Positions of {user}")
    table.add_column("#", style="cyan")
    table.add_column("Vault", style="cyan")
    table.add_column("Assets", style="green", justify="right")
    table.add_column("Shares", style="yellow", justify="right")
    table.add_column("APY", style="magenta", justify="right")
    table.add_column("State")

    for p in positions:
        apy = f"{p['apy']:.2f}%" if p["apy"] is not None else "n/a"
        state = "[green]active[/green]" if p["active"] else "[dim]closed[/dim]"
        table.add_row(str(p["index"]), p["vault"], p["assets"], p["shares"], apy, state)

    console.print(table)
    return 0


def evaluate_command(workflow: ReallocationWorkflow, args) -> int:
    api = ReallocationAPI(workflow)
    print_json(api.evaluate_position(resolve_user(workflow, args.user), args.index))
    return 0


def optimize_command(workflow: ReallocationWorkflow, args) -> int:
    api = ReallocationAPI(workflow)
    result = api.optimize_position(resolve_user(workflow, args.user), args.index, dry_run=args.dry_run)
    print_json(result)
    return 0 if result["status"] in ("success", "skipped", "planned") else 1


def optimize_all_command(workflow: ReallocationWorkflow, args) -> int:
    result = workflow.optimization_cycle()
    print_json(result["summary"])
    return 0 if result["summary"]["failed"] == 0 else 1


def stats_command(workflow: ReallocationWorkflow, args) -> int:
    api = ReallocationAPI(workflow)
    try:
        print_json(api.get_optimization_stats())
        if args.user:
            print_json(api.get_optimization_history(resolve_user(workflow, args.user), args.limit))
    except Exception as e:
        print(f"Error reading records: {e}")
        return 1
    return 0


def run_command(workflow: ReallocationWorkflow, args, scheduler_config: dict) -> int:
    """Start the scheduler and block until SIGINT/SIGTERM."""
    scheduler = ReallocationScheduler(scheduler_config)
    scheduler.schedule_optimization(workflow.optimization_cycle, run_immediately=True)

    stop = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    scheduler.start()
    print(f"Scheduler running every {scheduler.interval_minutes} minutes. Ctrl+C to stop.")
    stop.wait()

    # Abandon confirmation waits first so a running batch can return
    workflow.shutdown()
    scheduler.stop(wait=True)
    return 0


def simulate_command(workflow: ReallocationWorkflow, args) -> int:
    """Run one cycle against the sandbox and show before/after."""
    sandbox = workflow.sandbox
    api = ReallocationAPI(workflow)

    def show(title):
        table = Table(title=title)
        table.add_column("Position", style="cyan")
        table.add_column("Vault", style="cyan")
        table.add_column("Amount", style="green", justify="right")
        table.add_column("APY", style="magenta", justify="right")

        for name, address in sandbox.users.items():
            for p in api.get_user_positions(address):
                vault = sandbox.chain.get_contract(p["vault"])
                decimals = sandbox.chain.tokens.decimals(p["asset"])
                symbol = sandbox.chain.tokens.symbol(p["asset"])
                apy = f"{p['apy']:.2f}%" if p["apy"] is not None else "n/a"
                table.add_row(
                    f"{name}#{p['index']}",
                    getattr(vault, "name", p["vault"]),
                    f"{format_units(int(p['assets']), decimals)} {symbol}",
                    apy,
                )
        console.print(table)

    show("Before")
    result = workflow.optimization_cycle()
    show("After")

    summary = result["summary"]
    console.print(
        f"\n[bold]Summary:[/bold] {summary['succeeded']} reallocated, "
        f"{summary['skipped']} skipped, {summary['failed']} failed"
    )
    return 0


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Yield Reallocator CLI - manual pipeline control",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reallocator.py check
  python scripts/reallocator.py positions 0xabc...
  python scripts/reallocator.py optimize 0xabc... 0 --dry-run
  python scripts/reallocator.py optimize-all
  python scripts/reallocator.py stats --user 0xabc...
  python scripts/reallocator.py run
  python scripts/reallocator.py simulate
        """,
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to configuration file (default: config/default.yaml)",
    )
    parser.add_argument("--env-file", default=None, help="Path to .env file (default: .env)")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("check", help="Health check")

    p = sub.add_parser("positions", help="Show a user's positions")
    p.add_argument("user")

    p = sub.add_parser("evaluate", help="Evaluate one position")
    p.add_argument("user")
    p.add_argument("index", type=int)

    p = sub.add_parser("optimize", help="Reallocate one position")
    p.add_argument("user")
    p.add_argument("index", type=int)
    p.add_argument("--dry-run", action="store_true", help="Print the transaction plan only")

    sub.add_parser("optimize-all", help="Run the batch driver once")

    p = sub.add_parser("stats", help="Record statistics")
    p.add_argument("--user", default=None)
    p.add_argument("--limit", type=int, default=50)

    sub.add_parser("run", help="Start the periodic scheduler")
    sub.add_parser("simulate", help="Run one cycle against the local sandbox")

    args = parser.parse_args()

    try:
        config, secrets = load_reallocator_config(args.config, args.env_file)
    except Exception as e:
        print(f"Error loading configuration: {e}")
        return 1

    setup_logging(level=config.get("logging.level", "INFO"))

    try:
        workflow = create_workflow(config, secrets, mode="sandbox" if args.command == "simulate" else None)
    except Exception as e:
        print(f"Error initializing pipeline: {e}")
        logger.error("Initialization failed", exc_info=True)
        return 1

    commands = {
        "check": check_command,
        "positions": positions_command,
        "evaluate": evaluate_command,
        "optimize": optimize_command,
        "optimize-all": optimize_all_command,
        "stats": stats_command,
        "simulate": simulate_command,
    }

    if args.command == "run":
        return run_command(workflow, args, config.section("scheduler"))
    return commands[args.command](workflow, args)


if __name__ == "__main__":
    sys.exit(main())
