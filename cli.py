import logging
import secrets

import click
import yaml
from rich.console import Console

import monitor
import reconciler
from cleanup import teardown
from config import Settings
from ec2_manager import ec2_group
from errors import CreationError, PreflightError
from models import OutcomeStatus, ResourceKind, RunContext
from naming import ResourceNames, deterministic_suffix, unique_suffix, validate_suffix
from rds_manager import rds_group
from s3_manager import s3_group
from summary import write_summary
from utils import make_session, preflight, setup_logging

logger = logging.getLogger(__name__)


class AppState:
    """Settings and credentials for one invocation; builds the RunContext lazily."""

    def __init__(self, settings, profile=None):
        self.settings = settings
        self.profile = profile
        self._ctx = None

    def run_context(self, suffix=None):
        if self._ctx is not None:
            return self._ctx
        settings = self.settings
        session = make_session(self.profile, settings.region)
        try:
            account_id = preflight(session)
        except PreflightError as e:
            raise click.ClickException(str(e))
        try:
            suffix = validate_suffix(suffix) if suffix else deterministic_suffix(account_id, settings.region)
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--suffix")
        self._ctx = RunContext(
            region=settings.region,
            suffix=suffix,
            prefix=settings.name_prefix,
            session=session,
            account_id=account_id,
            names=ResourceNames.from_settings(settings, suffix),
        )
        return self._ctx


@click.group()
@click.option("--profile", default=None, envvar="AWS_PROFILE", help="AWS credentials profile")
@click.option("--region", default=None, help="AWS region (overrides config)")
@click.option("--config", "config_path", default=None, type=click.Path(dir_okay=False), help="YAML settings file")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.option("--log-file", default=None, type=click.Path(dir_okay=False), help="Also log to this file")
@click.pass_context
def cli(click_ctx, profile, region, config_path, verbose, log_file):
    """freetier: provision, monitor and tear down a Free Tier Laravel stack on AWS"""
    setup_logging(verbose, log_file)
    try:
        settings = Settings.load(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise click.ClickException(f"bad configuration: {e}")
    if region:
        settings.region = region
    click_ctx.obj = AppState(settings, profile)


cli.add_command(ec2_group, name="ec2")
cli.add_command(rds_group, name="rds")
cli.add_command(s3_group, name="s3")


def _prompt_settings(settings):
    """Ask for the main knobs; Enter keeps the bracketed default."""
    prefix = settings.name_prefix
    settings.region = click.prompt("AWS region", default=settings.region)
    settings.key_pair_base = click.prompt("Key pair name", default=settings.key_pair_base or f"{prefix}-key")
    settings.security_group_base = click.prompt(
        "Security group base name", default=settings.security_group_base or f"{prefix}-sg"
    )
    settings.instance_type = click.prompt("EC2 instance type", default=settings.instance_type)
    settings.database_base = click.prompt(
        "Database instance identifier", default=settings.database_base or f"{prefix}-db"
    )
    settings.db_instance_class = click.prompt("Database instance class", default=settings.db_instance_class)
    settings.db_allocated_storage = click.prompt(
        "Database storage (GB)", default=settings.db_allocated_storage, type=click.IntRange(20, 65536)
    )
    settings.db_username = click.prompt("Database master username", default=settings.db_username)
    password = click.prompt(
        "Database master password (empty to generate one)",
        default="",
        show_default=False,
        hide_input=True,
    )
    settings.db_password = password or settings.db_password


@cli.command("setup")
@click.option("--interactive", is_flag=True, help="Prompt for region, names, sizes and credentials")
@click.option("--suffix", default=None, help="Run suffix for resource names (default: derived from account and region)")
@click.option("--unique", is_flag=True, help="Use a fresh time-based suffix")
@click.pass_obj
def setup_cmd(app, interactive, suffix, unique):
    """Create the stack; re-running only creates what is missing"""
    if suffix and unique:
        raise click.UsageError("--suffix and --unique cannot be combined")
    settings = app.settings
    if interactive:
        _prompt_settings(settings)
    ctx = app.run_context(unique_suffix() if unique else suffix)

    generated = not settings.db_password
    password = settings.db_password or secrets.token_urlsafe(18)
    click.echo(f"Setting up Laravel stack in {ctx.region} (suffix {ctx.suffix})...")
    try:
        result = reconciler.provision(ctx, settings, password)
    except CreationError as e:
        logger.debug("setup stopped at %s %s", e.kind.value, e.name, exc_info=True)
        click.echo(f"[ERROR] {e}", err=True)
        live = [h for h in e.completed if h.is_live]
        if live:
            click.echo("Resources in place so far:", err=True)
            for h in live:
                click.echo(f"  {h.kind.value}\t{h.name}\t{h.resource_id}", err=True)
        click.echo("Re-run 'freetier setup' to retry, or 'freetier cleanup' to remove them.", err=True)
        raise click.ClickException("setup failed")

    for outcome in result.outcomes:
        click.echo(f"  {outcome}")
    if not result.created:
        click.echo("Nothing new to create; the stack is already in place.")

    db_outcome = next((o for o in result.outcomes if o.handle is not None and o.handle.kind is ResourceKind.DATABASE), None)
    if generated and db_outcome is not None and db_outcome.status is OutcomeStatus.ALREADY_SATISFIED:
        # the existing database keeps the password it was created with
        password = None
    path = write_summary(ctx, settings, result.handles, password)

    instance = result.handles.get(ResourceKind.COMPUTE_INSTANCE)
    if instance is not None and instance.attributes.get("public_ip"):
        click.echo(f"EC2 instance running at: http://{instance.attributes['public_ip']}")
    database = result.handles.get(ResourceKind.DATABASE)
    if database is not None:
        click.echo(f"RDS MySQL endpoint: {database.attributes.get('endpoint') or 'pending'}")
    bucket = result.handles.get(ResourceKind.OBJECT_BUCKET)
    if bucket is not None:
        click.echo(f"S3 Bucket: {bucket.name}")
    skipped = [o for o in result.outcomes if o.status is OutcomeStatus.SKIPPED]
    if skipped:
        click.secho(f"{len(skipped)} step(s) skipped; see warnings above.", fg="yellow")
    click.echo(f"Summary written to {path}")
    click.echo("AWS Free Tier Laravel setup complete!")


@cli.command("monitor")
@click.pass_obj
def monitor_cmd(app):
    """Show month-to-date cost, resources and free-tier running time"""
    ctx = app.run_context()
    summary = monitor.report(ctx, app.settings)
    monitor.render(summary, app.settings, Console())
    click.echo("Monitor complete! Check AWS Console for detailed billing information.")


@cli.command("cleanup")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
@click.option("--dry-run", is_flag=True, help="Only list what would be deleted")
@click.pass_obj
def cleanup_cmd(app, yes, dry_run):
    """Delete every resource matching the naming convention"""
    ctx = app.run_context()
    if not yes and not dry_run:
        click.secho("This will delete ALL Laravel-related AWS resources!", fg="yellow")
        click.echo("This action cannot be undone.")
        reply = click.prompt("Are you sure you want to continue? (y/N)", default="N", show_default=False)
        if reply.strip() not in ("y", "Y"):
            click.echo("Cleanup cancelled.")
            return

    report = teardown(ctx, app.settings, dry_run=dry_run)
    for outcome in report.outcomes:
        click.echo(f"  {outcome}")
    if dry_run:
        click.echo("Dry run: nothing was deleted.")
        return
    if report.skipped:
        click.secho(
            f"{len(report.skipped)} step(s) did not complete; re-run 'freetier cleanup' to retry.", fg="yellow"
        )
    click.echo("Cleanup complete!")
    monitor.render_limits(app.settings, Console())
    click.secho("Remember to stop/terminate resources when not in use!", fg="yellow")


if __name__ == "__main__":
    cli()
