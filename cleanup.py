# cleanup.py
"""Tear down every resource matching the naming convention, from any run.

Each delete is wrapped: not-found counts as already done, anything else is
logged as a warning and the teardown moves on. Security groups are only
deleted once the instances and databases that may reference them are
confirmed gone.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

import ec2_manager
import iam_manager
import rds_manager
import s3_manager
from models import Outcome, OutcomeStatus, ResourceKind, ResourceState
from reconciler import deletion_order
from utils import error_code, is_not_found

logger = logging.getLogger(__name__)

_ERRORS = (ClientError, WaiterError, BotoCoreError)


@dataclass
class TeardownReport:
    outcomes: list = field(default_factory=list)
    dry_run: bool = False

    def add(self, outcome):
        self.outcomes.append(outcome)
        return outcome

    @property
    def deleted(self):
        return [o for o in self.outcomes if o.status is OutcomeStatus.SUCCESS]

    @property
    def skipped(self):
        return [o for o in self.outcomes if o.status is OutcomeStatus.SKIPPED]


def _advance(handle, *states):
    """Walk handle through states, skipping those it is already past."""
    if handle is None:
        return
    for state in states:
        if handle.can_transition(state):
            handle.transition(state)


def _attempt(action, fn, *args, handle=None):
    """Run one delete call and turn its result into an Outcome."""
    _advance(handle, ResourceState.DELETING)
    try:
        fn(*args)
    except _ERRORS as e:
        if isinstance(e, ClientError) and is_not_found(e):
            logger.info("%s: already gone", action)
            _advance(handle, ResourceState.DELETED)
            return Outcome.already_satisfied(action, handle)
        if handle is not None:
            handle.revert()
        code = error_code(e) if isinstance(e, ClientError) else type(e).__name__
        logger.warning("%s failed: %s", action, e)
        return Outcome.skipped(action, code, handle)
    _advance(handle, ResourceState.DELETED)
    logger.info("%s: done", action)
    return Outcome.success(action, handle)


def _discover(report, label, fn, *args):
    """List candidates; None when the listing itself failed."""
    try:
        return fn(*args)
    except _ERRORS as e:
        logger.warning("could not list %s: %s", label, e)
        report.add(Outcome.skipped(f"discover {label}", "listing failed"))
        return None


class Teardown:
    def __init__(self, ctx, settings, dry_run=False):
        self.ctx = ctx
        self.settings = settings
        self.names = ctx.names
        self.report = TeardownReport(dry_run=dry_run)
        # set to False when something that may use the security groups survives
        self.groups_released = True

    def run(self):
        steps = {
            ResourceKind.COMPUTE_INSTANCE: self.cleanup_instances,
            ResourceKind.OBJECT_BUCKET: self.cleanup_buckets,
            ResourceKind.DATABASE: self.cleanup_databases,
            ResourceKind.ROLE: self.cleanup_iam,
            ResourceKind.SECURITY_GROUP: self.cleanup_security_groups,
            ResourceKind.KEY_PAIR: self.cleanup_key_pairs,
        }
        mode = " (dry run)" if self.report.dry_run else ""
        logger.info("starting teardown of %s-* resources in %s%s", self.ctx.prefix, self.ctx.region, mode)
        for kind in deletion_order():
            steps[kind]()
        self.cleanup_local_files()
        return self.report

    def _planned(self, action):
        logger.info("would %s", action)
        return self.report.add(Outcome.skipped(action, "dry run"))

    # ---------- EC2 instances ----------
    def cleanup_instances(self):
        prefix = self.names.discovery_prefix(ResourceKind.KEY_PAIR)
        handles = _discover(self.report, "EC2 instances", ec2_manager.list_instances, self.ctx, prefix)
        if handles is None:
            self.groups_released = False
            return
        if not handles:
            logger.warning("No EC2 instances found.")
            return
        ids = [h.resource_id for h in handles]
        action = f"terminate instances {', '.join(ids)}"
        if self.report.dry_run:
            self.groups_released = False
            self._planned(action)
            return
        for h in handles:
            _advance(h, ResourceState.STOPPING)
        try:
            try:
                ec2_manager.terminate_instances(self.ctx, ids, self.settings.waiter_config)
            except ClientError as e:
                if not is_not_found(e):
                    raise
                # one unknown id rejects the whole batch; retry with the ones still there
                handles = self._drop_vanished(handles, prefix)
                if handles:
                    ids = [h.resource_id for h in handles]
                    ec2_manager.terminate_instances(self.ctx, ids, self.settings.waiter_config)
        except _ERRORS as e:
            logger.warning("%s failed: %s", action, e)
            for h in handles:
                h.revert()
            self.groups_released = False
            self.report.add(Outcome.skipped(action, "termination not confirmed"))
            return
        for h in handles:
            _advance(h, ResourceState.DELETING, ResourceState.DELETED)
            self.report.add(Outcome.success(f"terminate instance {h.resource_id}", h))

    def _drop_vanished(self, handles, prefix):
        """Record instances no longer listed as gone; return the ones still present."""
        present = {h.resource_id for h in ec2_manager.list_instances(self.ctx, prefix)}
        remaining = []
        for h in handles:
            if h.resource_id in present:
                remaining.append(h)
                continue
            logger.info("instance %s: already gone", h.resource_id)
            _advance(h, ResourceState.DELETING, ResourceState.DELETED)
            self.report.add(Outcome.already_satisfied(f"terminate instance {h.resource_id}", h))
        return remaining

    # ---------- S3 ----------
    def cleanup_buckets(self):
        prefix = self.names.discovery_prefix(ResourceKind.OBJECT_BUCKET)
        buckets = _discover(self.report, "S3 buckets", s3_manager.list_buckets, self.ctx, prefix)
        if not buckets:
            if buckets is not None:
                logger.warning("No S3 buckets found.")
            return
        for b in buckets:
            action = f"delete bucket {b.name}"
            if self.report.dry_run:
                self._planned(action)
                continue
            self.report.add(_attempt(action, s3_manager.empty_and_delete_bucket, self.ctx, b.name, handle=b))

    # ---------- RDS ----------
    def cleanup_databases(self):
        prefix = self.names.discovery_prefix(ResourceKind.DATABASE)
        databases = _discover(self.report, "RDS instances", rds_manager.list_databases, self.ctx, prefix)
        if databases is None:
            self.groups_released = False
            return
        if not databases:
            logger.warning("No RDS instances found.")
            return
        for db in databases:
            action = f"delete database {db.resource_id}"
            if self.report.dry_run:
                self.groups_released = False
                self._planned(action)
                continue
            outcome = self.report.add(
                _attempt(action, rds_manager.delete_database, self.ctx, db.resource_id, self.settings.waiter_config, handle=db)
            )
            if not outcome.ok:
                self.groups_released = False

    # ---------- IAM ----------
    def cleanup_iam(self):
        """Detach first, then delete. Every step is best effort."""
        prefix = self.names.discovery_prefix(ResourceKind.ROLE)
        profiles = _discover(self.report, "instance profiles", iam_manager.list_instance_profiles, self.ctx, prefix)
        roles = _discover(self.report, "IAM roles", iam_manager.list_roles, self.ctx, prefix)
        if not profiles and not roles:
            if profiles is not None and roles is not None:
                logger.warning("No IAM roles or instance profiles found.")
            return
        iam = self.ctx.client("iam")

        for profile_name, role_names in profiles or []:
            for role_name in role_names:
                self._iam_step(
                    f"remove role {role_name} from {profile_name}",
                    iam.remove_role_from_instance_profile,
                    InstanceProfileName=profile_name,
                    RoleName=role_name,
                )
            self._iam_step(
                f"delete instance profile {profile_name}",
                iam.delete_instance_profile,
                InstanceProfileName=profile_name,
            )

        for role in roles or []:
            try:
                arns = iam_manager.attached_policy_arns(self.ctx, role.name)
            except ClientError as e:
                logger.warning("could not list policies of %s: %s", role.name, e)
                arns = []
            for arn in arns:
                self._iam_step(f"detach {arn} from {role.name}", iam.detach_role_policy, RoleName=role.name, PolicyArn=arn)
            self._iam_step(f"delete role {role.name}", iam.delete_role, RoleName=role.name)

    def _iam_step(self, action, fn, **kwargs):
        if self.report.dry_run:
            return self._planned(action)
        return self.report.add(_attempt(action, lambda: fn(**kwargs)))

    # ---------- security groups ----------
    def cleanup_security_groups(self):
        prefix = self.names.discovery_prefix(ResourceKind.SECURITY_GROUP)
        groups = _discover(self.report, "security groups", ec2_manager.list_security_groups, self.ctx, prefix)
        if not groups:
            if groups is not None:
                logger.warning("No security groups found.")
            return
        for g in groups:
            action = f"delete security group {g.name} ({g.resource_id})"
            if self.report.dry_run:
                self._planned(action)
            elif not self.groups_released:
                logger.warning("%s skipped: instances or databases using it are not confirmed deleted", action)
                self.report.add(Outcome.skipped(action, "dependents not confirmed deleted", g))
            else:
                self.report.add(_attempt(action, ec2_manager.delete_security_group, self.ctx, g.resource_id, handle=g))

    # ---------- key pairs ----------
    def cleanup_key_pairs(self):
        prefix = self.names.discovery_prefix(ResourceKind.KEY_PAIR)
        pairs = _discover(self.report, "key pairs", ec2_manager.list_key_pairs, self.ctx, prefix)
        if not pairs:
            if pairs is not None:
                logger.warning("No key pairs found.")
            return
        for kp in pairs:
            action = f"delete key pair {kp.name}"
            if self.report.dry_run:
                self._planned(action)
                continue
            self.report.add(_attempt(action, ec2_manager.delete_key_pair, self.ctx, kp.name, handle=kp))

    # ---------- local files ----------
    def cleanup_local_files(self):
        workdir = self.ctx.workdir
        paths = sorted(workdir.glob(f"{self.names.discovery_prefix(ResourceKind.KEY_PAIR)}*.pem"))
        summary_file = workdir / self.settings.summary_file
        if summary_file.exists():
            paths.append(summary_file)
        for path in paths:
            action = f"remove local file {path.name}"
            if self.report.dry_run:
                self._planned(action)
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                self.report.add(Outcome.already_satisfied(action))
            except OSError as e:
                logger.warning("%s failed: %s", action, e)
                self.report.add(Outcome.skipped(action, str(e)))
            else:
                logger.info("Removed %s", path.name)
                self.report.add(Outcome.success(action))


def teardown(ctx, settings, dry_run=False):
    return Teardown(ctx, settings, dry_run=dry_run).run()
