"""Tests for the per-service helpers in ec2_manager, rds_manager, s3_manager and iam_manager."""

from __future__ import annotations

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

import ec2_manager
import iam_manager
import rds_manager
import s3_manager
from errors import CreationError, ProbeError
from fakes import client_error
from models import IngressRule, OutcomeStatus, ResourceKind, ResourceSpec, ResourceState


@pytest.mark.parametrize(
    "service,operation,prober",
    [
        ("ec2", "describe_key_pairs", ec2_manager.find_key_pair),
        ("ec2", "describe_security_groups", ec2_manager.find_security_group),
        ("ec2", "describe_instances", ec2_manager.find_instance),
        ("rds", "describe_db_instances", rds_manager.find_database),
        ("s3", "head_bucket", s3_manager.find_bucket),
        ("iam", "get_role", iam_manager.find_role),
    ],
)
def test_connection_failure_is_not_absence(ctx, aws, service, operation, prober) -> None:
    """Test that a transport error while probing leaves existence unknown."""
    aws.fail(service, operation, EndpointConnectionError(endpoint_url=f"https://{service}.amazonaws.com"))

    with pytest.raises(ProbeError) as exc:
        prober(ctx, "laravel-x")

    assert isinstance(exc.value.cause, EndpointConnectionError)


class TestKeyPairs:
    """Tests for key pair helpers."""

    def test_find_missing_key_pair(self, ctx) -> None:
        assert ec2_manager.find_key_pair(ctx, "laravel-key-none") is None

    def test_probe_failure_is_not_absence(self, ctx, aws) -> None:
        aws.fail("ec2", "describe_key_pairs", "UnauthorizedOperation")

        with pytest.raises(ProbeError):
            ec2_manager.find_key_pair(ctx, "laravel-key-x")

    def test_list_by_prefix(self, ctx, aws) -> None:
        aws.ec2.key_pairs = {
            "laravel-key-a": {"KeyName": "laravel-key-a", "KeyPairId": "key-1"},
            "laravel-key-b": {"KeyName": "laravel-key-b", "KeyPairId": "key-2"},
            "other": {"KeyName": "other", "KeyPairId": "key-3"},
        }

        names = [h.name for h in ec2_manager.list_key_pairs(ctx, "laravel-key-")]

        assert names == ["laravel-key-a", "laravel-key-b"]


class TestSecurityGroups:
    """Tests for security group rules."""

    def test_ensure_ingress_only_adds_missing_rules(self, ctx, aws) -> None:
        gid = aws.ec2.add_group("laravel-sg-x", [IngressRule("tcp", 22, "0.0.0.0/0", "SSH").to_permission()])
        handle = ec2_manager.find_security_group(ctx, "laravel-sg-x")
        rules = [IngressRule("tcp", 22, "0.0.0.0/0"), IngressRule("tcp", 80, "0.0.0.0/0")]

        outcomes = ec2_manager.ensure_ingress(ctx, handle, rules)

        assert [o.status for o in outcomes] == [OutcomeStatus.ALREADY_SATISFIED, OutcomeStatus.SUCCESS]
        assert len(aws.ec2.groups[gid]["IpPermissions"]) == 2

    def test_duplicate_rule_is_already_satisfied(self, ctx, aws) -> None:
        aws.ec2.add_group("laravel-sg-x")
        handle = ec2_manager.find_security_group(ctx, "laravel-sg-x")
        aws.fail("ec2", "authorize_security_group_ingress", "InvalidPermission.Duplicate")

        outcomes = ec2_manager.ensure_ingress(ctx, handle, [IngressRule("tcp", 22, "0.0.0.0/0")])

        assert outcomes[0].status is OutcomeStatus.ALREADY_SATISFIED

    def test_other_authorize_errors_raise(self, ctx, aws) -> None:
        aws.ec2.add_group("laravel-sg-x")
        handle = ec2_manager.find_security_group(ctx, "laravel-sg-x")
        aws.fail("ec2", "authorize_security_group_ingress", "RulesPerSecurityGroupLimitExceeded")

        with pytest.raises(CreationError):
            ec2_manager.ensure_ingress(ctx, handle, [IngressRule("tcp", 22, "0.0.0.0/0")])


class TestInstances:
    """Tests for instance discovery."""

    def test_find_ignores_terminated_instances(self, ctx, aws) -> None:
        aws.ec2.add_instance("laravel-web-abc12345", "laravel-key-abc12345", state="terminated")

        assert ec2_manager.find_instance(ctx, "laravel-web-abc12345") is None

    def test_find_running_instance(self, ctx, aws) -> None:
        iid = aws.ec2.add_instance("laravel-web-abc12345", "laravel-key-abc12345")

        handle = ec2_manager.find_instance(ctx, "laravel-web-abc12345")

        assert handle.resource_id == iid
        assert handle.state is ResourceState.AVAILABLE
        assert handle.attributes["public_ip"] == "203.0.113.10"
        assert handle.attributes["created_by_us"]

    def test_list_filters_by_key_prefix(self, ctx, aws) -> None:
        ours = aws.ec2.add_instance("laravel-web-1", "laravel-key-1")
        aws.ec2.add_instance("other", "other-key")
        aws.ec2.add_instance("laravel-web-2", "laravel-key-2", state="terminated")

        handles = ec2_manager.list_instances(ctx, "laravel-key-")

        assert [h.resource_id for h in handles] == [ours]

    def test_pending_instance_is_creating(self, ctx, aws) -> None:
        aws.ec2.add_instance("laravel-web-1", "laravel-key-1", state="pending")

        handle = ec2_manager.list_instances(ctx, "laravel-key-")[0]

        assert handle.state is ResourceState.CREATING


class TestDatabases:
    """Tests for RDS helpers."""

    def test_find_skips_deleting_database(self, ctx, aws) -> None:
        aws.rds.add_database("laravel-db-x", status="deleting")

        assert rds_manager.find_database(ctx, "laravel-db-x") is None

    def test_stopped_database_counts_as_existing(self, ctx, aws) -> None:
        aws.rds.add_database("laravel-db-x", status="stopped")

        handle = rds_manager.find_database(ctx, "laravel-db-x")

        assert handle.state is ResourceState.AVAILABLE
        assert handle.provider_state == "stopped"

    def test_delete_waits_for_database_already_deleting(self, ctx, aws) -> None:
        aws.rds.add_database("laravel-db-x", status="deleting")

        rds_manager.delete_database(ctx, "laravel-db-x", {"Delay": 1, "MaxAttempts": 1})

        assert "laravel-db-x" not in aws.rds.dbs
        assert "wait:db_instance_deleted" in aws.operations("rds")

    def test_delete_reraises_other_invalid_states(self, ctx, aws) -> None:
        aws.rds.add_database("laravel-db-x", status="modifying")
        aws.fail("rds", "delete_db_instance", "InvalidDBInstanceState")

        with pytest.raises(ClientError):
            rds_manager.delete_database(ctx, "laravel-db-x", {"Delay": 1, "MaxAttempts": 1})


class TestBuckets:
    """Tests for S3 helpers."""

    def test_create_outside_us_east_1_sets_location(self, ctx, aws) -> None:
        ctx.region = "eu-west-1"
        spec = ResourceSpec(ResourceKind.OBJECT_BUCKET, "laravel-app-storage-x", {"owner": "t"})

        s3_manager.create_bucket(ctx, spec, {})

        create = next(kw for svc, op, kw in aws.calls if op == "create_bucket")
        assert create["CreateBucketConfiguration"] == {"LocationConstraint": "eu-west-1"}
        assert aws.s3.buckets["laravel-app-storage-x"]["public_access_block"]["BlockPublicAcls"] is True

    def test_bucket_size(self, ctx, aws) -> None:
        aws.s3.add_bucket("laravel-app-storage-x", {"a.txt": 1000, "b.jpg": 2048})

        assert s3_manager.bucket_size(ctx, "laravel-app-storage-x") == (2, 3048)

    def test_empty_and_delete(self, ctx, aws) -> None:
        aws.s3.add_bucket("laravel-app-storage-x", {"a.txt": 1, "b.txt": 2})

        s3_manager.empty_and_delete_bucket(ctx, "laravel-app-storage-x")

        assert aws.s3.buckets == {}

    @pytest.mark.parametrize(
        "num_bytes,expected", [(0, "0 Bytes"), (512, "512 Bytes"), (2048, "2.0 KiB"), (5 * 1024**3, "5.0 GiB")]
    )
    def test_human_size(self, num_bytes, expected) -> None:
        assert s3_manager.human_size(num_bytes) == expected


class TestIam:
    """Tests for IAM helpers."""

    def test_profile_already_holding_a_role(self, ctx, aws) -> None:
        aws.iam.create_role("laravel-ec2-s3-role", "{}")
        aws.iam.profiles["laravel-ec2-s3-profile"] = ["laravel-ec2-s3-role"]
        role = iam_manager.find_role(ctx, "laravel-ec2-s3-role")

        outcomes = iam_manager.ensure_instance_profile(ctx, role, "laravel-ec2-s3-profile", "t")

        assert [o.status for o in outcomes] == [OutcomeStatus.ALREADY_SATISFIED] * 2
        assert role.attributes["instance_profile"] == "laravel-ec2-s3-profile"

    def test_profile_errors_become_creation_errors(self, ctx, aws) -> None:
        aws.iam.create_role("laravel-ec2-s3-role", "{}")
        aws.fail("iam", "get_instance_profile", "AccessDenied")
        role = iam_manager.find_role(ctx, "laravel-ec2-s3-role")

        with pytest.raises(CreationError) as exc:
            iam_manager.ensure_instance_profile(ctx, role, "laravel-ec2-s3-profile", "t")

        assert exc.value.kind is ResourceKind.ROLE

    def test_list_instance_profiles(self, ctx, aws) -> None:
        aws.iam.profiles = {"laravel-ec2-s3-profile": ["laravel-ec2-s3-role"], "unrelated": []}

        assert iam_manager.list_instance_profiles(ctx, "laravel-ec2-s3-") == [
            ("laravel-ec2-s3-profile", ["laravel-ec2-s3-role"])
        ]

    def test_find_role_probe_failure(self, ctx, aws) -> None:
        aws.fail("iam", "get_role", client_error("Throttling"))

        with pytest.raises(ProbeError):
            iam_manager.find_role(ctx, "laravel-ec2-s3-role")
