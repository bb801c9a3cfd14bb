# monitor.py
"""Cost, inventory and free-tier running-time report."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

import ec2_manager
import rds_manager
import s3_manager
from models import ResourceKind

logger = logging.getLogger(__name__)

COST_REGION = "us-east-1"  # Cost Explorer endpoint


@dataclass(frozen=True)
class CostFigure:
    """Month-to-date cost. ``amount`` is None when the figure is unavailable."""

    amount: Optional[Decimal]
    unit: str = "USD"
    reason: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.amount is not None

    def __str__(self) -> str:
        if not self.available:
            return "unavailable"
        return f"${self.amount:.2f} {self.unit}"


UNAVAILABLE = CostFigure(None, reason="no data")


@dataclass
class UsageLine:
    handle: object
    hours: int
    warning: bool

    @property
    def days(self) -> int:
        return self.hours // 24


@dataclass
class Summary:
    generated_at: datetime
    cost: CostFigure
    inventory: dict = field(default_factory=dict)
    usage: list = field(default_factory=list)
    bucket_sizes: dict = field(default_factory=dict)
    errors: list = field(default_factory=list)

    @property
    def warnings(self):
        return [u for u in self.usage if u.warning]


def elapsed_hours(start, now):
    return int((now - start).total_seconds() // 3600)


def exceeds_threshold(hours, threshold):
    """True once hours pass the threshold; the threshold itself does not warn."""
    return hours > threshold


def month_period(today: date):
    """Cost Explorer period for the month so far; End is exclusive."""
    start = today.replace(day=1)
    return start.isoformat(), (today + timedelta(days=1)).isoformat()


def fetch_month_cost(ctx, today: date) -> CostFigure:
    start, end = month_period(today)
    try:
        resp = ctx.client("ce", region_name=COST_REGION).get_cost_and_usage(
            TimePeriod={"Start": start, "End": end},
            Granularity="MONTHLY",
            Metrics=["BlendedCost"],
        )
    except (ClientError, BotoCoreError) as e:
        logger.warning("Cost Explorer data not available: %s", e)
        return CostFigure(None, reason=str(e))

    results = resp.get("ResultsByTime", [])
    metric = results[0].get("Total", {}).get("BlendedCost") if results else None
    if not metric or metric.get("Amount") in (None, ""):
        return UNAVAILABLE
    try:
        return CostFigure(Decimal(metric["Amount"]), metric.get("Unit", "USD"))
    except InvalidOperation:
        return CostFigure(None, reason=f"unparseable amount {metric['Amount']!r}")


def _collect(summary, label, fn, *args):
    try:
        return fn(*args)
    except (ClientError, BotoCoreError) as e:
        logger.warning("could not list %s: %s", label, e)
        summary.errors.append(f"{label}: unavailable")
        return []


def report(ctx, settings, now: Optional[datetime] = None) -> Summary:
    now = now or datetime.now(timezone.utc)
    names = ctx.names
    summary = Summary(generated_at=now, cost=fetch_month_cost(ctx, now.date()))

    instances = _collect(
        summary, "EC2 instances", ec2_manager.list_instances, ctx, names.discovery_prefix(ResourceKind.KEY_PAIR)
    )
    databases = _collect(
        summary, "RDS instances", rds_manager.list_databases, ctx, names.discovery_prefix(ResourceKind.DATABASE)
    )
    buckets = _collect(
        summary, "S3 buckets", s3_manager.list_buckets, ctx, names.discovery_prefix(ResourceKind.OBJECT_BUCKET)
    )
    summary.inventory = {
        ResourceKind.COMPUTE_INSTANCE: instances,
        ResourceKind.DATABASE: databases,
        ResourceKind.OBJECT_BUCKET: buckets,
    }
    for b in buckets:
        try:
            summary.bucket_sizes[b.name] = s3_manager.bucket_size(ctx, b.name)
        except (ClientError, BotoCoreError) as e:
            logger.warning("could not size bucket %s: %s", b.name, e)

    metered = [h for h in instances if h.provider_state == "running"]
    metered += [h for h in databases if h.provider_state == "available"]
    for handle in metered:
        if handle.created_at is None:
            continue
        hours = elapsed_hours(handle.created_at, now)
        summary.usage.append(UsageLine(handle, hours, exceeds_threshold(hours, settings.warning_hours)))
    return summary


QUICK_ACTIONS = (
    ("Stop all instances (save money)", "freetier ec2 stop --all"),
    ("Start all instances", "freetier ec2 start --all"),
    ("Stop the database", "freetier rds stop --all"),
    ("View all resources", "freetier ec2 list && freetier rds list && freetier s3 list"),
    ("Clean up everything", "freetier cleanup"),
)

COST_TIPS = (
    "Stop EC2 instances when not in use (freetier ec2 stop --all)",
    "Stop RDS instances when not in use (freetier rds stop --all)",
    "Set up billing alerts in AWS Console",
    "Use AWS Cost Explorer to monitor spending",
    "Consider using Spot Instances for development",
    "Clean up unused resources regularly (freetier cleanup)",
)


def render(summary: Summary, settings, console: Optional[Console] = None) -> None:
    console = console or Console()
    console.print(
        Panel(
            f"[bold]AWS Laravel Cost Monitor[/bold]\n"
            f"Generated: {summary.generated_at.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            style="cyan",
        )
    )

    console.print("[bold blue]=== Current Month AWS Costs ===[/bold blue]")
    if not summary.cost.available:
        console.print("[yellow]Cost Explorer data not available. Check AWS Console.[/yellow]")
    else:
        console.print(f"Current Month Cost: {summary.cost}")
        if summary.cost.amount > 0:
            console.print("[yellow]You have incurred costs this month![/yellow]")
        else:
            console.print("[green]No costs incurred this month.[/green]")
    console.print()

    _render_inventory(summary, console)
    _render_running_time(summary, settings, console)
    render_limits(settings, console)

    console.print("[bold blue]=== Cost Optimization Tips ===[/bold blue]")
    for i, tip in enumerate(COST_TIPS, 1):
        console.print(f"{i}. {tip}")
    console.print()

    console.print("[bold blue]=== Quick Actions ===[/bold blue]")
    for i, (label, command) in enumerate(QUICK_ACTIONS, 1):
        console.print(f"{i}. {label}:\n   [cyan]{command}[/cyan]")
    console.print()


def _render_inventory(summary, console):
    console.print("[bold blue]=== Resource Usage ===[/bold blue]")

    table = Table(title="EC2 Instances", show_header=True, header_style="bold magenta")
    for col in ("Name", "Instance ID", "Type", "State", "Launch Time", "Public IP"):
        table.add_column(col)
    for h in summary.inventory.get(ResourceKind.COMPUTE_INSTANCE, []):
        table.add_row(
            h.name,
            h.resource_id,
            h.attributes.get("instance_type") or "-",
            h.provider_state or "-",
            h.created_at.strftime("%Y-%m-%d %H:%M") if h.created_at else "-",
            h.attributes.get("public_ip") or "-",
        )
    console.print(table if table.row_count else "  No EC2 instances found.")

    table = Table(title="RDS Instances", show_header=True, header_style="bold magenta")
    for col in ("Identifier", "Class", "Status", "Engine", "Endpoint"):
        table.add_column(col)
    for h in summary.inventory.get(ResourceKind.DATABASE, []):
        table.add_row(
            h.resource_id,
            h.attributes.get("instance_class") or "-",
            h.provider_state or "-",
            h.attributes.get("engine") or "-",
            h.attributes.get("endpoint") or "-",
        )
    console.print(table if table.row_count else "  No RDS instances found.")

    table = Table(title="S3 Buckets", show_header=True, header_style="bold magenta")
    table.add_column("Bucket")
    table.add_column("Objects", justify="right")
    table.add_column("Size", justify="right")
    for b in summary.inventory.get(ResourceKind.OBJECT_BUCKET, []):
        size = summary.bucket_sizes.get(b.name)
        if size is None:
            table.add_row(b.name, "-", "unknown")
        else:
            table.add_row(b.name, str(size[0]), s3_manager.human_size(size[1]))
    console.print(table if table.row_count else "  No S3 buckets found.")

    for err in summary.errors:
        console.print(f"[yellow]{err}[/yellow]")
    console.print()


def _render_running_time(summary, settings, console):
    console.print("[bold blue]=== Resource Running Time ===[/bold blue]")
    if not summary.usage:
        console.print("No running EC2 or RDS instances found.")
        console.print()
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Resource")
    table.add_column("Days", justify="right")
    table.add_column("Hours", justify="right")
    table.add_column(f"Of {settings.monthly_free_hours}h free", justify="right")
    for line in summary.usage:
        pct = 100 * line.hours / settings.monthly_free_hours if settings.monthly_free_hours else 0
        table.add_row(line.handle.resource_id, str(line.days), str(line.hours), f"{pct:.0f}%")
    console.print(table)
    for line in summary.warnings:
        console.print(
            f"[yellow]⚠️  {line.handle.resource_id}: approaching {settings.monthly_free_hours}-hour free tier limit![/yellow]"
        )
    console.print()


def render_limits(settings, console):
    console.print("[bold blue]=== AWS Free Tier Limits ===[/bold blue]")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Service", style="cyan")
    table.add_column("Free allowance")
    table.add_column("Beyond the free tier")
    for limit in settings.free_tier_limits:
        table.add_row(limit.service, "\n".join(limit.allowances), limit.note)
    console.print(table)
    console.print()
