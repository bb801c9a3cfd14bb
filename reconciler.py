# reconciler.py
"""Converge the declared stack against what exists in the account.

Every resource is probed before it is created; anything already live is
left untouched. Steps run in CREATION_ORDER so each one can use the
identifiers produced by the steps it depends on.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

import ec2_manager
import iam_manager
import rds_manager
import s3_manager
from errors import CreationError, ProbeError
from models import Outcome, OutcomeStatus, ResourceHandle, ResourceKind, ResourceSpec, ResourceState, RunContext

logger = logging.getLogger(__name__)

CREATION_ORDER = (
    ResourceKind.KEY_PAIR,
    ResourceKind.SECURITY_GROUP,
    ResourceKind.ROLE,
    ResourceKind.DATABASE,
    ResourceKind.OBJECT_BUCKET,
    ResourceKind.COMPUTE_INSTANCE,
)

DEPENDENCIES = {
    ResourceKind.KEY_PAIR: (),
    ResourceKind.SECURITY_GROUP: (),
    ResourceKind.ROLE: (),
    ResourceKind.DATABASE: (ResourceKind.SECURITY_GROUP,),
    ResourceKind.OBJECT_BUCKET: (),
    ResourceKind.COMPUTE_INSTANCE: (
        ResourceKind.KEY_PAIR,
        ResourceKind.SECURITY_GROUP,
        ResourceKind.ROLE,
    ),
}

# kind -> (prober, creator)
_REGISTRY = {
    ResourceKind.KEY_PAIR: (ec2_manager.find_key_pair, ec2_manager.create_key_pair),
    ResourceKind.SECURITY_GROUP: (ec2_manager.find_security_group, ec2_manager.create_security_group),
    ResourceKind.ROLE: (iam_manager.find_role, iam_manager.create_role),
    ResourceKind.DATABASE: (rds_manager.find_database, rds_manager.create_database),
    ResourceKind.OBJECT_BUCKET: (s3_manager.find_bucket, s3_manager.create_bucket),
    ResourceKind.COMPUTE_INSTANCE: (ec2_manager.find_instance, ec2_manager.create_instance),
}

# kinds a previous run may have left half-created
_SETTLERS = {
    ResourceKind.DATABASE: rds_manager.wait_until_available,
    ResourceKind.COMPUTE_INSTANCE: ec2_manager.wait_until_running,
}


def check_order(order):
    """Raise ValueError unless every kind comes after everything it depends on."""
    seen = set()
    for kind in order:
        missing = [d for d in DEPENDENCIES[kind] if d not in seen]
        if missing:
            raise ValueError(f"{kind.value} placed before {', '.join(d.value for d in missing)}")
        seen.add(kind)
    return tuple(order)


def deletion_order():
    """Dependents first: the reverse of CREATION_ORDER."""
    return tuple(reversed(check_order(CREATION_ORDER)))


def exists(ctx: RunContext, kind: ResourceKind, name: str) -> Optional[ResourceHandle]:
    prober, _ = _REGISTRY[kind]
    return prober(ctx, name)


def ensure(ctx: RunContext, spec: ResourceSpec, resolved=None) -> Outcome:
    """Create spec's resource unless a live one already exists.

    Raises:
        CreationError: if the create call fails, or a resource left half-created
            by an earlier run never becomes available
    """
    action = f"{spec.kind.value} {spec.name}"
    prober, creator = _REGISTRY[spec.kind]
    try:
        handle = prober(ctx, spec.name)
    except ProbeError as e:
        logger.warning("%s; not creating it", e)
        return Outcome.skipped(action, f"existence unknown: {e.cause}")

    if handle is not None:
        settle = _SETTLERS.get(spec.kind)
        if settle is not None and handle.state is ResourceState.CREATING:
            logger.info("%s is still being created (%s), waiting for it", action, handle.resource_id)
            try:
                settle(ctx, handle, spec.params["waiter"])
            except (ClientError, WaiterError, BotoCoreError) as e:
                raise CreationError(spec.kind, spec.name, ctx.region, e) from e
        logger.info("%s already exists (%s), leaving it unchanged", action, handle.resource_id)
        return Outcome.already_satisfied(action, handle)

    try:
        handle = creator(ctx, spec, resolved or {})
    except (ClientError, WaiterError, BotoCoreError, ValueError) as e:
        raise CreationError(spec.kind, spec.name, ctx.region, e) from e
    return Outcome.success(action, handle)


def build_specs(ctx: RunContext, settings, db_password):
    """Declare the stack for this run, keyed by kind."""
    names = ctx.names
    owner = settings.owner
    waiter = settings.waiter_config
    return {
        ResourceKind.KEY_PAIR: ResourceSpec(ResourceKind.KEY_PAIR, names.key_pair, {"owner": owner}),
        ResourceKind.SECURITY_GROUP: ResourceSpec(
            ResourceKind.SECURITY_GROUP,
            names.security_group,
            {
                "owner": owner,
                "description": settings.security_group_description,
                "rules": tuple(settings.ingress_rules),
            },
        ),
        ResourceKind.ROLE: ResourceSpec(
            ResourceKind.ROLE,
            names.role,
            {
                "owner": owner,
                "instance_profile": names.instance_profile,
                "policy_arn": settings.role_policy_arn,
            },
        ),
        ResourceKind.DATABASE: ResourceSpec(
            ResourceKind.DATABASE,
            names.database,
            {
                "owner": owner,
                "engine": settings.db_engine,
                "instance_class": settings.db_instance_class,
                "allocated_storage": settings.db_allocated_storage,
                "db_name": settings.db_name,
                "username": settings.db_username,
                "password": db_password,
                "waiter": waiter,
            },
        ),
        ResourceKind.OBJECT_BUCKET: ResourceSpec(ResourceKind.OBJECT_BUCKET, names.bucket, {"owner": owner}),
        ResourceKind.COMPUTE_INSTANCE: ResourceSpec(
            ResourceKind.COMPUTE_INSTANCE,
            names.instance,
            {
                "owner": owner,
                "ami": settings.ami,
                "instance_type": settings.instance_type,
                "waiter": waiter,
            },
        ),
    }


@dataclass
class ProvisionResult:
    handles: dict = field(default_factory=dict)
    outcomes: list = field(default_factory=list)

    @property
    def created(self):
        return [o for o in self.outcomes if o.status is OutcomeStatus.SUCCESS]


def _after_security_group(ctx, spec, handle, settings):
    return ec2_manager.ensure_ingress(ctx, handle, spec.params["rules"])


def _after_role(ctx, spec, handle, settings):
    outcomes = iam_manager.ensure_instance_profile(ctx, handle, spec.params["instance_profile"], settings.owner)
    outcomes.append(iam_manager.ensure_policy_attachment(ctx, handle, spec.params["policy_arn"]))
    if any(o.status is OutcomeStatus.SUCCESS for o in outcomes) and settings.iam_propagation_seconds:
        logger.info("waiting %ss for IAM changes to propagate...", settings.iam_propagation_seconds)
        time.sleep(settings.iam_propagation_seconds)
    return outcomes


# follow-up steps run even when the resource already existed, so a run
# interrupted halfway is completed on the next one
_FOLLOW_UPS = {
    ResourceKind.SECURITY_GROUP: _after_security_group,
    ResourceKind.ROLE: _after_role,
}


def provision(ctx: RunContext, settings, db_password) -> ProvisionResult:
    """Ensure every resource in CREATION_ORDER.

    Raises:
        CreationError: carrying the handles realized so far in ``completed``
    """
    specs = build_specs(ctx, settings, db_password)
    result = ProvisionResult()
    try:
        for kind in check_order(CREATION_ORDER):
            spec = specs[kind]
            missing = [d for d in DEPENDENCIES[kind] if d not in result.handles]
            if missing:
                raise CreationError(
                    kind,
                    spec.name,
                    ctx.region,
                    f"required {', '.join(d.value for d in missing)} is unavailable",
                )
            outcome = ensure(ctx, spec, result.handles)
            result.outcomes.append(outcome)
            if outcome.handle is None:
                continue
            result.handles[kind] = outcome.handle
            follow_up = _FOLLOW_UPS.get(kind)
            if follow_up:
                result.outcomes.extend(follow_up(ctx, spec, outcome.handle, settings))
    except CreationError as e:
        e.completed = list(result.handles.values())
        raise
    return result
