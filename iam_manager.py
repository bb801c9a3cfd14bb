# iam_manager.py
"""IAM role + instance profile that let the instance reach S3."""

import json
import logging

from botocore.exceptions import BotoCoreError, ClientError

from errors import CreationError, ProbeError
from models import Outcome, ResourceHandle, ResourceKind, ResourceState
from utils import base_tags, error_code, is_not_found

logger = logging.getLogger(__name__)

EC2_TRUST_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Principal": {"Service": "ec2.amazonaws.com"},
            "Action": "sts:AssumeRole",
        }
    ],
}


def _role_handle(role, profile_name, state=ResourceState.AVAILABLE):
    return ResourceHandle(
        ResourceKind.ROLE,
        role.get("RoleId", role["RoleName"]),
        role["RoleName"],
        state=state,
        created_at=role.get("CreateDate"),
        attributes={"arn": role.get("Arn"), "instance_profile": profile_name},
    )


def find_role(ctx, name, profile_name=None):
    try:
        role = ctx.client("iam").get_role(RoleName=name)["Role"]
    except ClientError as e:
        if is_not_found(e):
            return None
        raise ProbeError(ResourceKind.ROLE, name, e) from e
    except BotoCoreError as e:
        raise ProbeError(ResourceKind.ROLE, name, e) from e
    return _role_handle(role, profile_name)


def create_role(ctx, spec, resolved):
    iam = ctx.client("iam")
    role = iam.create_role(
        RoleName=spec.name,
        AssumeRolePolicyDocument=json.dumps(EC2_TRUST_POLICY),
        Description="Lets the Laravel instance use S3",
        Tags=base_tags(spec.params["owner"]),
    )["Role"]
    iam.get_waiter("role_exists").wait(RoleName=spec.name)
    logger.info("role created: %s", spec.name)
    handle = _role_handle(role, spec.params["instance_profile"], state=ResourceState.CREATING)
    handle.transition(ResourceState.AVAILABLE)
    return handle


def ensure_instance_profile(ctx, role_handle, profile_name, owner):
    """Make sure the profile exists and holds the role."""
    iam = ctx.client("iam")
    outcomes = []
    action = f"instance profile {profile_name}"
    try:
        try:
            profile = iam.get_instance_profile(InstanceProfileName=profile_name)["InstanceProfile"]
            outcomes.append(Outcome.already_satisfied(action, role_handle))
        except ClientError as e:
            if not is_not_found(e):
                raise
            profile = iam.create_instance_profile(
                InstanceProfileName=profile_name, Tags=base_tags(owner)
            )["InstanceProfile"]
            iam.get_waiter("instance_profile_exists").wait(InstanceProfileName=profile_name)
            logger.info("instance profile created: %s", profile_name)
            outcomes.append(Outcome.success(action, role_handle))

        action = f"add role {role_handle.name} to {profile_name}"
        if any(r["RoleName"] == role_handle.name for r in profile.get("Roles", [])):
            outcomes.append(Outcome.already_satisfied(action, role_handle))
        else:
            try:
                iam.add_role_to_instance_profile(InstanceProfileName=profile_name, RoleName=role_handle.name)
                outcomes.append(Outcome.success(action, role_handle))
            except ClientError as e:
                # a profile holds one role; LimitExceeded means it is already attached
                if error_code(e) != "LimitExceeded":
                    raise
                outcomes.append(Outcome.already_satisfied(action, role_handle))
    except ClientError as e:
        raise CreationError(ResourceKind.ROLE, profile_name, ctx.region, e) from e
    role_handle.attributes["instance_profile"] = profile_name
    return outcomes


def ensure_policy_attachment(ctx, role_handle, policy_arn):
    iam = ctx.client("iam")
    action = f"attach {policy_arn} to {role_handle.name}"
    try:
        attached = iam.list_attached_role_policies(RoleName=role_handle.name).get("AttachedPolicies", [])
        if any(p["PolicyArn"] == policy_arn for p in attached):
            return Outcome.already_satisfied(action, role_handle)
        iam.attach_role_policy(RoleName=role_handle.name, PolicyArn=policy_arn)
    except ClientError as e:
        raise CreationError(ResourceKind.ROLE, role_handle.name, ctx.region, e) from e
    logger.info("attached %s to %s", policy_arn, role_handle.name)
    return Outcome.success(action, role_handle)


# ---------- teardown discovery ----------
def list_instance_profiles(ctx, prefix):
    """Return [(profile name, [role names])] for profiles matching prefix."""
    found = []
    paginator = ctx.client("iam").get_paginator("list_instance_profiles")
    for page in paginator.paginate():
        for p in page.get("InstanceProfiles", []):
            if p["InstanceProfileName"].startswith(prefix):
                found.append((p["InstanceProfileName"], [r["RoleName"] for r in p.get("Roles", [])]))
    return found


def list_roles(ctx, prefix):
    roles = []
    paginator = ctx.client("iam").get_paginator("list_roles")
    for page in paginator.paginate():
        for r in page.get("Roles", []):
            if r["RoleName"].startswith(prefix):
                roles.append(_role_handle(r, None))
    return roles


def attached_policy_arns(ctx, role_name):
    resp = ctx.client("iam").list_attached_role_policies(RoleName=role_name)
    return [p["PolicyArn"] for p in resp.get("AttachedPolicies", [])]
