# ec2_manager.py
"""EC2 key pairs, security groups and instances."""

import logging

import click
from botocore.exceptions import BotoCoreError, ClientError

from errors import CreationError, ProbeError
from models import IngressRule, Outcome, ResourceHandle, ResourceKind, ResourceState
from utils import (
    created_by_us,
    error_code,
    is_not_found,
    resolve_ami,
    tag_specification,
    tags_to_dict,
    write_private_file,
)

logger = logging.getLogger(__name__)

LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]
NON_TERMINATED_STATES = LIVE_INSTANCE_STATES + ["shutting-down"]

_INSTANCE_STATES = {
    "pending": ResourceState.CREATING,
    "running": ResourceState.AVAILABLE,
    "stopped": ResourceState.AVAILABLE,
    "stopping": ResourceState.STOPPING,
    "shutting-down": ResourceState.DELETING,
    "terminated": ResourceState.DELETED,
}


# ---------- key pairs ----------
def key_file_path(ctx, key_name):
    return ctx.workdir / f"{key_name}.pem"


def _key_pair_handle(ctx, kp):
    name = kp["KeyName"]
    return ResourceHandle(
        ResourceKind.KEY_PAIR,
        kp.get("KeyPairId", name),
        name,
        created_at=kp.get("CreateTime"),
        attributes={"key_file": str(key_file_path(ctx, name))},
    )


def find_key_pair(ctx, name):
    try:
        resp = ctx.client("ec2").describe_key_pairs(KeyNames=[name])
    except ClientError as e:
        if is_not_found(e):
            return None
        raise ProbeError(ResourceKind.KEY_PAIR, name, e) from e
    except BotoCoreError as e:
        raise ProbeError(ResourceKind.KEY_PAIR, name, e) from e
    pairs = resp.get("KeyPairs", [])
    return _key_pair_handle(ctx, pairs[0]) if pairs else None


def create_key_pair(ctx, spec, resolved):
    resp = ctx.client("ec2").create_key_pair(
        KeyName=spec.name,
        KeyType="rsa",
        TagSpecifications=tag_specification("key-pair", spec.params["owner"]),
    )
    # the private key is only returned once; keep it
    path = write_private_file(key_file_path(ctx, spec.name), resp["KeyMaterial"])
    logger.info("key pair created: %s (private key saved to %s)", spec.name, path)
    handle = ResourceHandle(
        ResourceKind.KEY_PAIR,
        resp.get("KeyPairId", spec.name),
        spec.name,
        state=ResourceState.CREATING,
        attributes={"key_file": str(path)},
    )
    handle.transition(ResourceState.AVAILABLE)
    return handle


def list_key_pairs(ctx, prefix):
    resp = ctx.client("ec2").describe_key_pairs(Filters=[{"Name": "key-name", "Values": [f"{prefix}*"]}])
    return [_key_pair_handle(ctx, kp) for kp in resp.get("KeyPairs", []) if kp["KeyName"].startswith(prefix)]


def delete_key_pair(ctx, key_name):
    ctx.client("ec2").delete_key_pair(KeyName=key_name)


# ---------- security groups ----------
def _rules_of(group):
    rules = set()
    for perm in group.get("IpPermissions", []):
        if perm.get("FromPort") is None or perm.get("FromPort") != perm.get("ToPort"):
            continue
        for rng in perm.get("IpRanges", []):
            rules.add(IngressRule(perm["IpProtocol"], perm["FromPort"], rng["CidrIp"]))
    return rules


def _security_group_handle(group):
    return ResourceHandle(
        ResourceKind.SECURITY_GROUP,
        group["GroupId"],
        group["GroupName"],
        attributes={"vpc_id": group.get("VpcId"), "rules": _rules_of(group)},
    )


def find_security_group(ctx, name):
    try:
        resp = ctx.client("ec2").describe_security_groups(Filters=[{"Name": "group-name", "Values": [name]}])
    except ClientError as e:
        if is_not_found(e):
            return None
        raise ProbeError(ResourceKind.SECURITY_GROUP, name, e) from e
    except BotoCoreError as e:
        raise ProbeError(ResourceKind.SECURITY_GROUP, name, e) from e
    groups = resp.get("SecurityGroups", [])
    return _security_group_handle(groups[0]) if groups else None


def create_security_group(ctx, spec, resolved):
    resp = ctx.client("ec2").create_security_group(
        GroupName=spec.name,
        Description=spec.params["description"],
        TagSpecifications=tag_specification("security-group", spec.params["owner"], spec.name),
    )
    logger.info("security group created: %s (%s)", spec.name, resp["GroupId"])
    handle = ResourceHandle(
        ResourceKind.SECURITY_GROUP,
        resp["GroupId"],
        spec.name,
        state=ResourceState.CREATING,
        attributes={"rules": set()},
    )
    handle.transition(ResourceState.AVAILABLE)
    return handle


def ensure_ingress(ctx, handle, rules):
    """Authorize each missing rule; one Outcome per rule."""
    ec2 = ctx.client("ec2")
    existing = handle.attributes.setdefault("rules", set())
    outcomes = []
    for rule in rules:
        action = f"ingress {rule.protocol}/{rule.port} from {rule.cidr} on {handle.resource_id}"
        if rule in existing:
            outcomes.append(Outcome.already_satisfied(action, handle))
            continue
        try:
            ec2.authorize_security_group_ingress(GroupId=handle.resource_id, IpPermissions=[rule.to_permission()])
        except ClientError as e:
            if error_code(e) != "InvalidPermission.Duplicate":
                raise CreationError(ResourceKind.SECURITY_GROUP, handle.name, ctx.region, e) from e
            outcomes.append(Outcome.already_satisfied(action, handle))
        else:
            logger.info("allowed %s/%s from %s", rule.protocol, rule.port, rule.cidr)
            outcomes.append(Outcome.success(action, handle))
        existing.add(rule)
    return outcomes


def list_security_groups(ctx, prefix):
    resp = ctx.client("ec2").describe_security_groups(Filters=[{"Name": "group-name", "Values": [f"{prefix}*"]}])
    return [
        _security_group_handle(g) for g in resp.get("SecurityGroups", []) if g["GroupName"].startswith(prefix)
    ]


def delete_security_group(ctx, group_id):
    ctx.client("ec2").delete_security_group(GroupId=group_id)


# ---------- instances ----------
def _iter_instances(ec2, **kwargs):
    paginator = ec2.get_paginator("describe_instances")
    for page in paginator.paginate(**kwargs):
        for r in page.get("Reservations", []):
            yield from r.get("Instances", [])


def instance_handle(inst):
    tags = tags_to_dict(inst.get("Tags"))
    state = inst["State"]["Name"]
    return ResourceHandle(
        ResourceKind.COMPUTE_INSTANCE,
        inst["InstanceId"],
        tags.get("Name", inst["InstanceId"]),
        state=_INSTANCE_STATES.get(state, ResourceState.AVAILABLE),
        provider_state=state,
        created_at=inst.get("LaunchTime"),
        attributes={
            "instance_type": inst.get("InstanceType"),
            "public_ip": inst.get("PublicIpAddress"),
            "key_name": inst.get("KeyName"),
            "security_groups": [g["GroupId"] for g in inst.get("SecurityGroups", [])],
            "created_by_us": created_by_us(inst.get("Tags")),
        },
    )


def find_instance(ctx, name):
    filters = [
        {"Name": "tag:Name", "Values": [name]},
        {"Name": "instance-state-name", "Values": LIVE_INSTANCE_STATES},
    ]
    try:
        for inst in _iter_instances(ctx.client("ec2"), Filters=filters):
            return instance_handle(inst)
    except ClientError as e:
        if is_not_found(e):
            return None
        raise ProbeError(ResourceKind.COMPUTE_INSTANCE, name, e) from e
    except BotoCoreError as e:
        raise ProbeError(ResourceKind.COMPUTE_INSTANCE, name, e) from e
    return None


def create_instance(ctx, spec, resolved):
    p = spec.params
    ec2 = ctx.client("ec2")
    ami_id = resolve_ami(ctx.client("ssm"), p["ami"])
    resp = ec2.run_instances(
        ImageId=ami_id,
        InstanceType=p["instance_type"],
        MinCount=1,
        MaxCount=1,
        KeyName=resolved[ResourceKind.KEY_PAIR].name,
        SecurityGroupIds=[resolved[ResourceKind.SECURITY_GROUP].resource_id],
        IamInstanceProfile={"Name": resolved[ResourceKind.ROLE].attributes["instance_profile"]},
        TagSpecifications=tag_specification("instance", p["owner"], spec.name),
    )
    iid = resp["Instances"][0]["InstanceId"]
    handle = ResourceHandle(
        ResourceKind.COMPUTE_INSTANCE,
        iid,
        spec.name,
        state=ResourceState.CREATING,
        provider_state="pending",
        attributes={"instance_type": p["instance_type"], "ami": ami_id},
    )
    logger.info("instance %s launched, waiting for it to be running...", iid)
    return wait_until_running(ctx, handle, p["waiter"])


def wait_until_running(ctx, handle, waiter_config):
    """Block until a pending instance runs, then fill in its address."""
    ec2 = ctx.client("ec2")
    iid = handle.resource_id
    ec2.get_waiter("instance_running").wait(InstanceIds=[iid], WaiterConfig=waiter_config)

    # the public address only exists once the instance runs
    for inst in _iter_instances(ec2, InstanceIds=[iid]):
        handle.attributes["public_ip"] = inst.get("PublicIpAddress")
        handle.created_at = inst.get("LaunchTime")
        handle.provider_state = inst["State"]["Name"]
    handle.transition(ResourceState.AVAILABLE)
    return handle


def list_instances(ctx, key_prefix, states=None):
    filters = [
        {"Name": "key-name", "Values": [f"{key_prefix}*"]},
        {"Name": "instance-state-name", "Values": states or NON_TERMINATED_STATES},
    ]
    return [instance_handle(i) for i in _iter_instances(ctx.client("ec2"), Filters=filters)]


def terminate_instances(ctx, instance_ids, waiter_config):
    """Terminate and block until EC2 reports every instance terminated."""
    ec2 = ctx.client("ec2")
    ec2.terminate_instances(InstanceIds=list(instance_ids))
    logger.info("waiting for instances to terminate: %s", ", ".join(instance_ids))
    ec2.get_waiter("instance_terminated").wait(InstanceIds=list(instance_ids), WaiterConfig=waiter_config)


# ---------- click ----------
def _ensure_cli_instance(ctx, iid):
    try:
        for inst in _iter_instances(ctx.client("ec2"), InstanceIds=[iid]):
            if created_by_us(inst.get("Tags")):
                return inst
    except ClientError as e:
        raise click.ClickException(f"cannot describe {iid}: {e}")
    click.echo("refusing: instance was not created by freetier-stack", err=True)
    raise SystemExit(2)


def _target_ids(ctx, iid, all_, state):
    if iid:
        _ensure_cli_instance(ctx, iid)
        return [iid]
    if not all_:
        raise click.UsageError("pass --id or --all")
    handles = list_instances(ctx, ctx.names.discovery_prefix(ResourceKind.KEY_PAIR), states=[state])
    return [h.resource_id for h in handles if h.attributes.get("created_by_us")]


@click.group(name="ec2")
def ec2_group():
    """Manage EC2 instances created by freetier-stack"""


@ec2_group.command("list")
@click.pass_obj
def list_cmd(app):
    """List freetier-stack instances"""
    ctx = app.run_context()
    handles = list_instances(ctx, ctx.names.discovery_prefix(ResourceKind.KEY_PAIR))
    if not handles:
        click.echo("No freetier-stack instances found.")
    for h in handles:
        click.echo(
            f"{h.name}\t{h.resource_id}\t{h.provider_state}\t{h.attributes['instance_type']}\t{h.attributes.get('public_ip') or '-'}"
        )


@ec2_group.command("start")
@click.option("--id", "iid", default=None, help="InstanceId")
@click.option("--all", "all_", is_flag=True, help="Start every stopped instance")
@click.pass_obj
def start_cmd(app, iid, all_):
    ctx = app.run_context()
    ids = _target_ids(ctx, iid, all_, "stopped")
    if not ids:
        click.echo("nothing to start.")
        return
    try:
        ctx.client("ec2").start_instances(InstanceIds=ids)
        click.echo(f"starting {', '.join(ids)}...")
    except ClientError as e:
        click.echo(f"error starting: {e}", err=True)


@ec2_group.command("stop")
@click.option("--id", "iid", default=None, help="InstanceId")
@click.option("--all", "all_", is_flag=True, help="Stop every running instance")
@click.pass_obj
def stop_cmd(app, iid, all_):
    ctx = app.run_context()
    ids = _target_ids(ctx, iid, all_, "running")
    if not ids:
        click.echo("nothing to stop.")
        return
    try:
        ctx.client("ec2").stop_instances(InstanceIds=ids)
        click.echo(f"stopping {', '.join(ids)}...")
    except ClientError as e:
        click.echo(f"error stopping: {e}", err=True)
