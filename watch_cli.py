#!/usr/bin/env python3
"""
changewatch management CLI.

Usage: python watch_cli.py <command> [options]

Commands:
    run                     - Run every loop once (tick, match, sweep) and exit
    status                  - Show pipeline health
    watches [tenant]        - List watches
    runs <watch_id>         - Show recent runs of a watch
    deliveries [status]     - List deliveries (pending, delivered, failed)
    trigger <tenant> <id>   - Start a run of a watch now
    pause <tenant> <id>     - Pause a watch
    resume <tenant> <id>    - Resume a paused or errored watch
    sweep                   - Attempt due deliveries once
"""

import asyncio
import logging
import sys
from datetime import datetime
from typing import List, Optional

from changewatch.config import load_settings
from changewatch.errors import ChangewatchError
from changewatch.models import DeliveryStatus, RunStatus, WatchStatus
from changewatch.orchestrator import Orchestrator


class Colors:
    """ANSI color codes for terminal output."""
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    CYAN = "\033[96m"
    WHITE = "\033[97m"
    BOLD = "\033[1m"
    END = "\033[0m"


STATUS_COLORS = {
    WatchStatus.ACTIVE.value: Colors.GREEN,
    WatchStatus.PAUSED.value: Colors.YELLOW,
    WatchStatus.ERROR.value: Colors.RED,
    RunStatus.RUNNING.value: Colors.CYAN,
    RunStatus.COMPLETED.value: Colors.GREEN,
    RunStatus.FAILED.value: Colors.RED,
    DeliveryStatus.PENDING.value: Colors.YELLOW,
    DeliveryStatus.DELIVERED.value: Colors.GREEN,
}


def format_timestamp(dt: Optional[datetime]) -> str:
    """Format datetime for display."""
    if not dt:
        return "N/A"
    return dt.strftime("%Y-%m-%d %H:%M:%S UTC")


def colored(status: str) -> str:
    return f"{STATUS_COLORS.get(status, Colors.WHITE)}{status}{Colors.END}"


def need(args: List[str], count: int) -> List[str]:
    if len(args) < count:
        print(f"{Colors.RED}Missing arguments{Colors.END}")
        print(__doc__)
        sys.exit(1)
    return args[:count]


async def show_status(orch: Orchestrator, args: List[str]) -> None:
    report = await orch.status()
    print(f"{Colors.BOLD}📊 changewatch status{Colors.END}")
    print("=" * 50)
    print("Watches: " + ", ".join(f"{colored(k)} {v}" for k, v in report["watches"].items()))
    print(f"Running runs: {report['running_runs']}")
    overdue_color = Colors.RED if report["overdue_watches"] else Colors.GREEN
    print(f"Overdue watches: {overdue_color}{report['overdue_watches']}{Colors.END}")
    stale_color = Colors.RED if report["stale_runs"] else Colors.GREEN
    print(f"Stale runs: {stale_color}{report['stale_runs']}{Colors.END}")
    print(f"Unmatched events: {report['unmatched_events']}")
    print("Deliveries: " + ", ".join(f"{colored(k)} {v}" for k, v in report["deliveries"].items()))
    print()
    if report["healthy"]:
        print(f"{Colors.GREEN}✅ System Healthy{Colors.END}")
    else:
        print(f"{Colors.YELLOW}⚠️  Needs attention{Colors.END}")


async def show_watches(orch: Orchestrator, args: List[str]) -> None:
    tenant = args[0] if args else None
    watches = await orch.store.list_watches(tenant)
    print(f"{Colors.BOLD}📋 Watches{Colors.END}")
    print("=" * 80)
    if not watches:
        print(f"{Colors.YELLOW}No watches{Colors.END}")
        return
    for w in watches:
        print(f"{Colors.BOLD}{w.name}{Colors.END} ({w.id}) [{colored(w.status.value)}]")
        print(f"   Tenant: {w.tenant}  URL: {Colors.CYAN}{w.url}{Colors.END}")
        print(f"   Schedule: {w.schedule}  Next run: {format_timestamp(w.next_run_at)}")
        if w.consecutive_failures:
            print(f"   Consecutive failures: {Colors.RED}{w.consecutive_failures}{Colors.END}")


async def show_runs(orch: Orchestrator, args: List[str]) -> None:
    (watch_id,) = need(args, 1)
    runs = await orch.store.list_runs(watch_id)
    print(f"{Colors.BOLD}🏃 Runs of {watch_id}{Colors.END}")
    print("=" * 80)
    for r in runs:
        print(f"{format_timestamp(r.started_at)} [{colored(r.status.value)}] {r.trigger}")
        if r.status == RunStatus.COMPLETED:
            print(
                f"   found {r.entities_found}, new {r.entities_new}, changed {r.entities_changed}, "
                f"removed {r.entities_removed}, dropped {r.records_dropped}"
            )
        if r.error_message:
            print(f"   {Colors.RED}{r.error_message}{Colors.END}")


async def show_deliveries(orch: Orchestrator, args: List[str]) -> None:
    status = DeliveryStatus(args[0]) if args else None
    deliveries = await orch.store.list_deliveries(status)
    print(f"{Colors.BOLD}📨 Deliveries{Colors.END}")
    print("=" * 80)
    for d in deliveries:
        print(
            f"{d.id} [{colored(d.status.value)}] attempts {d.attempts}/{d.max_attempts} "
            f"next {format_timestamp(d.next_retry_at)}"
        )
        if d.last_error:
            print(f"   {Colors.RED}{d.last_error}{Colors.END}")


async def trigger_watch(orch: Orchestrator, args: List[str]) -> None:
    tenant, watch_id = need(args, 2)
    result = await orch.watches.trigger(tenant, watch_id)
    if not result.accepted:
        print(f"{Colors.YELLOW}⚠️  Not started: {result.reason}{Colors.END}")
        return
    print(f"{Colors.GREEN}✅ Run {result.run_id} started{Colors.END}")
    await orch.watches.drain()
    run = await orch.store.get_run(result.run_id)
    print(f"Run finished: {colored(run.status.value)} {run.error_message or ''}")


async def pause_watch(orch: Orchestrator, args: List[str]) -> None:
    tenant, watch_id = need(args, 2)
    watch = await orch.watches.pause(tenant, watch_id)
    print(f"Watch {watch.name} is {colored(watch.status.value)}")


async def resume_watch(orch: Orchestrator, args: List[str]) -> None:
    tenant, watch_id = need(args, 2)
    watch = await orch.watches.resume(tenant, watch_id)
    print(f"Watch {watch.name} is {colored(watch.status.value)}")


async def sweep(orch: Orchestrator, args: List[str]) -> None:
    outcomes = await orch.dispatcher.sweep()
    print(f"Delivery sweep: {outcomes or 'nothing due'}")


async def run_once(orch: Orchestrator, args: List[str]) -> None:
    summary = await orch.run_once()
    print(f"{Colors.GREEN}✅ {summary}{Colors.END}")


COMMANDS = {
    "run": run_once,
    "status": show_status,
    "watches": show_watches,
    "runs": show_runs,
    "deliveries": show_deliveries,
    "trigger": trigger_watch,
    "pause": pause_watch,
    "resume": resume_watch,
    "sweep": sweep,
}


async def main(argv: List[str]) -> int:
    command = argv[0].lower()
    if command not in COMMANDS:
        print(f"{Colors.RED}Unknown command: {command}{Colors.END}")
        print(__doc__)
        return 1

    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s"
    )

    try:
        async with Orchestrator(settings) as orch:
            await COMMANDS[command](orch, argv[1:])
    except (ChangewatchError, ValueError) as e:
        print(f"{Colors.RED}Error: {e}{Colors.END}")
        return 1
    return 0


def cli() -> None:
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    try:
        sys.exit(asyncio.run(main(sys.argv[1:])))
    except KeyboardInterrupt:
        print(f"\n{Colors.YELLOW}Interrupted{Colors.END}")


if __name__ == "__main__":
    cli()
