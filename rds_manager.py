# rds_manager.py
"""RDS MySQL instance for the application database."""

import logging

import click
from botocore.exceptions import BotoCoreError, ClientError

from errors import ProbeError
from models import ResourceHandle, ResourceKind, ResourceState
from utils import base_tags, error_code, is_not_found

logger = logging.getLogger(__name__)

_DB_STATES = {
    "creating": ResourceState.CREATING,
    "backing-up": ResourceState.CREATING,
    "configuring-enhanced-monitoring": ResourceState.CREATING,
    "available": ResourceState.AVAILABLE,
    "stopped": ResourceState.AVAILABLE,
    "starting": ResourceState.AVAILABLE,
    "modifying": ResourceState.AVAILABLE,
    "stopping": ResourceState.STOPPING,
    "deleting": ResourceState.DELETING,
    "deleted": ResourceState.DELETED,
}
_GONE = ("deleting", "deleted")


def database_handle(db):
    status = db.get("DBInstanceStatus", "")
    endpoint = db.get("Endpoint") or {}
    return ResourceHandle(
        ResourceKind.DATABASE,
        db["DBInstanceIdentifier"],
        db["DBInstanceIdentifier"],
        state=_DB_STATES.get(status, ResourceState.AVAILABLE),
        provider_state=status,
        created_at=db.get("InstanceCreateTime"),
        attributes={
            "instance_class": db.get("DBInstanceClass"),
            "engine": db.get("Engine"),
            "endpoint": endpoint.get("Address"),
            "port": endpoint.get("Port"),
        },
    )


def find_database(ctx, name):
    try:
        resp = ctx.client("rds").describe_db_instances(DBInstanceIdentifier=name)
    except ClientError as e:
        if is_not_found(e):
            return None
        raise ProbeError(ResourceKind.DATABASE, name, e) from e
    except BotoCoreError as e:
        raise ProbeError(ResourceKind.DATABASE, name, e) from e
    for db in resp.get("DBInstances", []):
        if db.get("DBInstanceStatus") not in _GONE:
            return database_handle(db)
    return None


def create_database(ctx, spec, resolved):
    p = spec.params
    rds = ctx.client("rds")
    rds.create_db_instance(
        DBInstanceIdentifier=spec.name,
        DBInstanceClass=p["instance_class"],
        Engine=p["engine"],
        AllocatedStorage=p["allocated_storage"],
        DBName=p["db_name"],
        MasterUsername=p["username"],
        MasterUserPassword=p["password"],
        VpcSecurityGroupIds=[resolved[ResourceKind.SECURITY_GROUP].resource_id],
        MultiAZ=False,
        BackupRetentionPeriod=0,
        PubliclyAccessible=True,
        Tags=base_tags(p["owner"], spec.name),
    )
    handle = ResourceHandle(
        ResourceKind.DATABASE,
        spec.name,
        spec.name,
        state=ResourceState.CREATING,
        provider_state="creating",
    )
    logger.info("database %s requested, waiting for it to become available (this takes several minutes)...", spec.name)
    return wait_until_available(ctx, handle, p["waiter"])


def wait_until_available(ctx, handle, waiter_config):
    rds = ctx.client("rds")
    rds.get_waiter("db_instance_available").wait(DBInstanceIdentifier=handle.resource_id, WaiterConfig=waiter_config)

    resp = rds.describe_db_instances(DBInstanceIdentifier=handle.resource_id)
    fresh = database_handle(resp["DBInstances"][0])
    handle.attributes = fresh.attributes
    handle.created_at = fresh.created_at
    handle.provider_state = fresh.provider_state
    handle.transition(ResourceState.AVAILABLE)
    return handle


def list_databases(ctx, prefix, statuses=None):
    handles = []
    paginator = ctx.client("rds").get_paginator("describe_db_instances")
    for page in paginator.paginate():
        for db in page.get("DBInstances", []):
            if not db["DBInstanceIdentifier"].startswith(prefix):
                continue
            if db.get("DBInstanceStatus") == "deleted":
                continue
            if statuses and db.get("DBInstanceStatus") not in statuses:
                continue
            handles.append(database_handle(db))
    return handles


def delete_database(ctx, db_id, waiter_config):
    """Delete without a final snapshot and block until RDS reports it gone.

    A database already being deleted is only waited on.
    """
    rds = ctx.client("rds")
    try:
        rds.delete_db_instance(
            DBInstanceIdentifier=db_id,
            SkipFinalSnapshot=True,
            DeleteAutomatedBackups=True,
        )
    except ClientError as e:
        if error_code(e) != "InvalidDBInstanceState":
            raise
        status = rds.describe_db_instances(DBInstanceIdentifier=db_id)["DBInstances"][0].get("DBInstanceStatus")
        if status != "deleting":
            raise
        logger.info("database %s is already being deleted", db_id)
    logger.info("waiting for database %s to be deleted...", db_id)
    rds.get_waiter("db_instance_deleted").wait(DBInstanceIdentifier=db_id, WaiterConfig=waiter_config)


# ---------- click ----------
def _target_dbs(ctx, db_id, all_, status):
    prefix = ctx.names.discovery_prefix(ResourceKind.DATABASE)
    if db_id:
        if not db_id.startswith(prefix):
            click.echo(f"refusing: {db_id} does not match {prefix}*", err=True)
            raise SystemExit(2)
        return [db_id]
    if not all_:
        raise click.UsageError("pass --id or --all")
    return [h.resource_id for h in list_databases(ctx, prefix, statuses=[status])]


@click.group(name="rds")
def rds_group():
    """Manage the RDS database created by freetier-stack"""


@rds_group.command("list")
@click.pass_obj
def list_cmd(app):
    """List freetier-stack databases"""
    ctx = app.run_context()
    handles = list_databases(ctx, ctx.names.discovery_prefix(ResourceKind.DATABASE))
    if not handles:
        click.echo("No freetier-stack databases found.")
    for h in handles:
        click.echo(
            f"{h.resource_id}\t{h.provider_state}\t{h.attributes['instance_class']}\t{h.attributes.get('endpoint') or '-'}"
        )


@rds_group.command("start")
@click.option("--id", "db_id", default=None, help="DBInstanceIdentifier")
@click.option("--all", "all_", is_flag=True, help="Start every stopped database")
@click.pass_obj
def start_cmd(app, db_id, all_):
    ctx = app.run_context()
    rds = ctx.client("rds")
    for target in _target_dbs(ctx, db_id, all_, "stopped"):
        try:
            rds.start_db_instance(DBInstanceIdentifier=target)
            click.echo(f"starting {target}...")
        except ClientError as e:
            click.echo(f"error starting {target}: {e}", err=True)


@rds_group.command("stop")
@click.option("--id", "db_id", default=None, help="DBInstanceIdentifier")
@click.option("--all", "all_", is_flag=True, help="Stop every available database")
@click.pass_obj
def stop_cmd(app, db_id, all_):
    """Stop a database (RDS restarts stopped instances after 7 days)"""
    ctx = app.run_context()
    rds = ctx.client("rds")
    for target in _target_dbs(ctx, db_id, all_, "available"):
        try:
            rds.stop_db_instance(DBInstanceIdentifier=target)
            click.echo(f"stopping {target}...")
        except ClientError as e:
            click.echo(f"error stopping {target}: {e}", err=True)
