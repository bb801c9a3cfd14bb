"""Tests for provisioning against the in-memory account."""

from __future__ import annotations

import stat

import pytest
from botocore.exceptions import EndpointConnectionError, ReadTimeoutError

import reconciler
from errors import CreationError
from models import OutcomeStatus, ResourceKind, ResourceSpec, ResourceState


class TestOrdering:
    """Tests for creation and deletion order."""

    def test_creation_order_respects_dependencies(self) -> None:
        assert reconciler.check_order(reconciler.CREATION_ORDER) == reconciler.CREATION_ORDER

    def test_dependent_before_dependency_is_rejected(self) -> None:
        order = (ResourceKind.COMPUTE_INSTANCE,) + tuple(
            k for k in reconciler.CREATION_ORDER if k is not ResourceKind.COMPUTE_INSTANCE
        )

        with pytest.raises(ValueError, match="instance placed before"):
            reconciler.check_order(order)

    def test_deletion_order_is_reverse(self) -> None:
        order = reconciler.deletion_order()

        assert order[0] is ResourceKind.COMPUTE_INSTANCE
        assert order[-1] is ResourceKind.KEY_PAIR
        assert order.index(ResourceKind.DATABASE) < order.index(ResourceKind.SECURITY_GROUP)


class TestEnsure:
    """Tests for the single-resource ensure step."""

    def test_creates_when_absent(self, ctx, aws, settings) -> None:
        spec = reconciler.build_specs(ctx, settings, "pw")[ResourceKind.KEY_PAIR]

        outcome = reconciler.ensure(ctx, spec)

        assert outcome.status is OutcomeStatus.SUCCESS
        assert outcome.handle.state is ResourceState.AVAILABLE
        assert "laravel-key-abc12345" in aws.ec2.key_pairs

    def test_existing_resource_is_left_alone(self, ctx, aws, settings) -> None:
        aws.s3.add_bucket("laravel-app-storage-abc12345")
        spec = reconciler.build_specs(ctx, settings, "pw")[ResourceKind.OBJECT_BUCKET]

        outcome = reconciler.ensure(ctx, spec)

        assert outcome.status is OutcomeStatus.ALREADY_SATISFIED
        assert "create_bucket" not in aws.operations("s3")

    def test_failed_probe_skips_creation(self, ctx, aws, settings) -> None:
        aws.s3.foreign.add("laravel-app-storage-abc12345")
        spec = reconciler.build_specs(ctx, settings, "pw")[ResourceKind.OBJECT_BUCKET]

        outcome = reconciler.ensure(ctx, spec)

        assert outcome.status is OutcomeStatus.SKIPPED
        assert outcome.reason.startswith("existence unknown")
        assert "create_bucket" not in aws.operations("s3")

    def test_failed_create_raises(self, ctx, aws, settings) -> None:
        aws.fail("ec2", "create_security_group", "UnauthorizedOperation")
        spec = ResourceSpec(ResourceKind.SECURITY_GROUP, "laravel-sg-x", {"owner": "t", "description": "d"})

        with pytest.raises(CreationError) as exc:
            reconciler.ensure(ctx, spec)

        assert exc.value.kind is ResourceKind.SECURITY_GROUP
        assert exc.value.region == "us-east-1"
        assert "UnauthorizedOperation" in str(exc.value)

    def test_unreachable_endpoint_skips_creation(self, ctx, aws, settings) -> None:
        aws.fail("ec2", "describe_key_pairs", EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com"))
        spec = reconciler.build_specs(ctx, settings, "pw")[ResourceKind.KEY_PAIR]

        outcome = reconciler.ensure(ctx, spec)

        assert outcome.status is OutcomeStatus.SKIPPED
        assert outcome.reason.startswith("existence unknown")
        assert "create_key_pair" not in aws.operations()

    def test_pending_instance_is_waited_for(self, ctx, aws, settings) -> None:
        iid = aws.ec2.add_instance("laravel-web-abc12345", "laravel-key-abc12345", state="pending")
        spec = reconciler.build_specs(ctx, settings, "pw")[ResourceKind.COMPUTE_INSTANCE]

        outcome = reconciler.ensure(ctx, spec)

        assert outcome.status is OutcomeStatus.ALREADY_SATISFIED
        assert outcome.handle.resource_id == iid
        assert outcome.handle.state is ResourceState.AVAILABLE
        assert outcome.handle.attributes["public_ip"] == "203.0.113.10"
        assert "wait:instance_running" in aws.operations("ec2")
        assert "run_instances" not in aws.operations()

    def test_creating_database_is_waited_for(self, ctx, aws, settings) -> None:
        aws.rds.add_database("laravel-db-abc12345", status="creating")
        spec = reconciler.build_specs(ctx, settings, "pw")[ResourceKind.DATABASE]

        outcome = reconciler.ensure(ctx, spec)

        assert outcome.status is OutcomeStatus.ALREADY_SATISFIED
        assert outcome.handle.state is ResourceState.AVAILABLE
        assert outcome.handle.provider_state == "available"
        assert "create_db_instance" not in aws.operations()

    def test_pending_instance_that_never_runs_raises(self, ctx, aws, settings) -> None:
        aws.ec2.add_instance("laravel-web-abc12345", "laravel-key-abc12345", state="pending")
        aws.fail("ec2", "wait:instance_running", "timeout")
        spec = reconciler.build_specs(ctx, settings, "pw")[ResourceKind.COMPUTE_INSTANCE]

        with pytest.raises(CreationError) as exc:
            reconciler.ensure(ctx, spec)

        assert exc.value.kind is ResourceKind.COMPUTE_INSTANCE
        assert "run_instances" not in aws.operations()

    def test_exists_probe(self, ctx, aws) -> None:
        aws.rds.add_database("laravel-db-abc12345")

        handle = reconciler.exists(ctx, ResourceKind.DATABASE, "laravel-db-abc12345")

        assert handle.attributes["endpoint"].startswith("laravel-db-abc12345.")
        assert reconciler.exists(ctx, ResourceKind.DATABASE, "laravel-db-other") is None


class TestProvision:
    """Tests for a full provisioning run."""

    def test_creates_whole_stack(self, ctx, aws, settings, tmp_path) -> None:
        result = reconciler.provision(ctx, settings, "s3cret-pw")

        assert set(result.handles) == set(ResourceKind)
        assert all(o.status is OutcomeStatus.SUCCESS for o in result.outcomes)
        # one create per resource
        for service, op in [
            ("ec2", "create_key_pair"),
            ("ec2", "create_security_group"),
            ("iam", "create_role"),
            ("iam", "create_instance_profile"),
            ("rds", "create_db_instance"),
            ("s3", "create_bucket"),
            ("ec2", "run_instances"),
        ]:
            assert aws.operations(service).count(op) == 1

        key_file = tmp_path / "laravel-key-abc12345.pem"
        assert stat.S_IMODE(key_file.stat().st_mode) == 0o600

    def test_instance_uses_dependency_identifiers(self, ctx, aws, settings) -> None:
        result = reconciler.provision(ctx, settings, "pw")

        run = next(kw for svc, op, kw in aws.calls if op == "run_instances")
        assert run["KeyName"] == result.handles[ResourceKind.KEY_PAIR].name
        assert run["SecurityGroupIds"] == [result.handles[ResourceKind.SECURITY_GROUP].resource_id]
        assert run["IamInstanceProfile"] == {"Name": "laravel-ec2-s3-profile"}
        assert run["ImageId"] == "ami-0a1b2c3d4e5f60718"
        db = next(kw for svc, op, kw in aws.calls if op == "create_db_instance")
        assert db["VpcSecurityGroupIds"] == [result.handles[ResourceKind.SECURITY_GROUP].resource_id]
        assert db["BackupRetentionPeriod"] == 0
        assert db["MultiAZ"] is False

    def test_creation_follows_dependency_order(self, ctx, aws, settings) -> None:
        reconciler.provision(ctx, settings, "pw")

        ops = aws.operations()
        assert ops.index("create_security_group") < ops.index("create_db_instance")
        assert ops.index("create_key_pair") < ops.index("run_instances")
        assert ops.index("add_role_to_instance_profile") < ops.index("run_instances")

    def test_all_ingress_rules_are_authorized(self, ctx, aws, settings) -> None:
        result = reconciler.provision(ctx, settings, "pw")

        group = aws.ec2.groups[result.handles[ResourceKind.SECURITY_GROUP].resource_id]
        assert sorted(p["FromPort"] for p in group["IpPermissions"]) == [22, 80, 443, 3306]

    def test_second_run_creates_nothing(self, ctx, aws, settings) -> None:
        first = reconciler.provision(ctx, settings, "pw")
        creates_before = [op for op in aws.operations() if op.startswith(("create_", "run_", "authorize_", "attach_", "add_"))]

        second = reconciler.provision(ctx, settings, "pw")

        creates_after = [op for op in aws.operations() if op.startswith(("create_", "run_", "authorize_", "attach_", "add_"))]
        assert creates_after == creates_before
        assert all(o.status is OutcomeStatus.ALREADY_SATISFIED for o in second.outcomes)
        for kind in ResourceKind:
            assert second.handles[kind].resource_id == first.handles[kind].resource_id
        assert len(aws.ec2.live_instances()) == 1

    def test_interrupted_role_setup_is_completed(self, ctx, aws, settings) -> None:
        aws.iam.create_role("laravel-ec2-s3-role", "{}")

        result = reconciler.provision(ctx, settings, "pw")

        statuses = {o.action: o.status for o in result.outcomes}
        assert statuses["role laravel-ec2-s3-role"] is OutcomeStatus.ALREADY_SATISFIED
        assert statuses["instance profile laravel-ec2-s3-profile"] is OutcomeStatus.SUCCESS
        assert aws.iam.attached["laravel-ec2-s3-role"] == [settings.role_policy_arn]

    def test_creation_failure_reports_completed_handles(self, ctx, aws, settings) -> None:
        aws.fail("rds", "create_db_instance", "StorageQuotaExceeded")

        with pytest.raises(CreationError) as exc:
            reconciler.provision(ctx, settings, "pw")

        assert exc.value.kind is ResourceKind.DATABASE
        assert {h.kind for h in exc.value.completed} == {
            ResourceKind.KEY_PAIR,
            ResourceKind.SECURITY_GROUP,
            ResourceKind.ROLE,
        }
        assert "run_instances" not in aws.operations()

    def test_unknown_dependency_stops_dependents(self, ctx, aws, settings) -> None:
        aws.fail("ec2", "describe_security_groups", "RequestLimitExceeded")

        with pytest.raises(CreationError, match="security-group is unavailable") as exc:
            reconciler.provision(ctx, settings, "pw")

        assert exc.value.kind is ResourceKind.DATABASE
        assert "create_security_group" not in aws.operations()
        assert "create_db_instance" not in aws.operations()

    def test_read_timeout_on_bucket_lookup_skips_only_the_bucket(self, ctx, aws, settings) -> None:
        aws.fail("s3", "head_bucket", ReadTimeoutError(endpoint_url="https://s3.amazonaws.com"))

        result = reconciler.provision(ctx, settings, "pw")

        skipped = [o for o in result.outcomes if o.status is OutcomeStatus.SKIPPED]
        assert [o.action for o in skipped] == ["bucket laravel-app-storage-abc12345"]
        assert ResourceKind.OBJECT_BUCKET not in result.handles
        assert "create_bucket" not in aws.operations()
        assert len(aws.ec2.live_instances()) == 1

    def test_iam_propagation_pause(self, ctx, aws, settings, monkeypatch) -> None:
        pauses = []
        monkeypatch.setattr(reconciler.time, "sleep", pauses.append)
        settings.iam_propagation_seconds = 10

        reconciler.provision(ctx, settings, "pw")
        reconciler.provision(ctx, settings, "pw")

        assert pauses == [10]
