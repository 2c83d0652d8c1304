"""Entry point for the sprt usage monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sprt.config import settings
from sprt.usage.errors import DataUnavailableError
from sprt.usage.models import RateLimitResult, UsageView
from sprt.usage.quota import display_percent, resets_in
from sprt.usage.service import build_service, compute_display_label

console = Console()
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)

_CLAIM_TITLES = {
    "five_hour": "Session (5h)",
    "seven_day": "Weekly (all models)",
    "seven_day_model": "Weekly (model)",
}

_STATUS_STYLES = {
    "normal": "green",
    "near_limit": "yellow",
    "exhausted": "bold red",
    "unknown": "dim",
}


def run_server() -> None:
    """Start the FastAPI server."""
    console.print(Panel("Starting sprt API Server", style="bold green"))
    uvicorn.run(
        "sprt.api.server:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )


async def _collect(force: bool) -> tuple[UsageView, RateLimitResult | None, str | None]:
    service = build_service(settings)
    try:
        view = await service.refresh()
        try:
            limits = await service.get_rate_limits(force=force)
        except DataUnavailableError as e:
            return view, None, str(e)
        return view, limits, None
    finally:
        await service.stop()


def run_status(force: bool = False) -> None:
    """Print a one-shot usage and rate-limit summary."""
    with console.status("[bold green]Scanning session logs..."):
        view, limits, error = asyncio.run(_collect(force))

    now = datetime.now(timezone.utc)
    rt = view.realtime
    label = compute_display_label(limits, rt, now)
    console.print(Panel(f"[bold]{label}[/bold]", title="sprt", style="bold blue", expand=False))

    usage = Table(title="Activity")
    usage.add_column("Period")
    usage.add_column("Messages", justify="right")
    usage.add_column("Tokens", justify="right")
    usage.add_row("Today", str(rt.today_messages), f"{rt.today_tokens.total:,}")
    usage.add_row("This week", str(rt.week_messages), f"{rt.week_tokens.total:,}")
    console.print(usage)
    console.print(f"[dim]Active sessions: {rt.active_sessions} | Plan: {rt.plan_type or 'unknown'}[/dim]")

    if view.projects:
        projects = Table(title="Busiest projects this week")
        projects.add_column("Project")
        projects.add_column("Sessions", justify="right")
        projects.add_column("Messages", justify="right")
        for p in view.projects:
            projects.add_row(p.project, str(p.session_count), str(p.total_messages))
        console.print(projects)

    if view.merged.error:
        console.print(f"[yellow]Stats cache: {view.merged.error}[/yellow]")

    if limits is None:
        console.print(f"\n[red]Rate limits unavailable:[/red] {error}")
        return

    table = Table(title=f"Rate limits ({limits.snapshot.source.value})")
    table.add_column("Claim")
    table.add_column("Used", justify="right")
    table.add_column("Status")
    table.add_column("Resets in", justify="right")
    for name, claim in limits.snapshot.claims().items():
        style = _STATUS_STYLES.get(claim.status.value, "")
        table.add_row(
            _CLAIM_TITLES.get(name, name),
            f"{display_percent(claim.utilization)}%",
            f"[{style}]{claim.status.value}[/{style}]",
            resets_in(claim, now) or "-",
        )
    console.print(table)
    if limits.stale:
        console.print(f"[yellow]Showing cached limits: {limits.error}[/yellow]")


def main() -> None:
    parser = argparse.ArgumentParser(description="Claude Code usage and rate-limit monitor")
    sub = parser.add_subparsers(dest="command")

    # Server mode
    sub.add_parser("serve", help="Start the API server")

    # One-shot summary
    status_parser = sub.add_parser("status", help="Print current usage and rate limits")
    status_parser.add_argument("--force", action="store_true", help="Bypass the rate-limit cache")

    args = parser.parse_args()

    if args.command == "serve":
        run_server()
    elif args.command == "status":
        run_status(force=args.force)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
