# s3_manager.py
import logging

import click
from botocore.exceptions import BotoCoreError, ClientError

from errors import ProbeError
from models import ResourceHandle, ResourceKind, ResourceState
from utils import base_tags, error_code, is_not_found

logger = logging.getLogger(__name__)


def _bucket_handle(name, created_at=None, state=ResourceState.AVAILABLE):
    return ResourceHandle(ResourceKind.OBJECT_BUCKET, name, name, state=state, created_at=created_at)


def find_bucket(ctx, name):
    try:
        ctx.client("s3").head_bucket(Bucket=name)
    except ClientError as e:
        if is_not_found(e):
            return None
        # 403: the name is taken by another account; creating would fail too
        raise ProbeError(ResourceKind.OBJECT_BUCKET, name, e) from e
    except BotoCoreError as e:
        raise ProbeError(ResourceKind.OBJECT_BUCKET, name, e) from e
    return _bucket_handle(name)


def create_bucket(ctx, spec, resolved):
    s3 = ctx.client("s3")
    # us-east-1 takes no CreateBucketConfiguration
    kwargs = dict(Bucket=spec.name)
    if ctx.region != "us-east-1":
        kwargs["CreateBucketConfiguration"] = {"LocationConstraint": ctx.region}
    s3.create_bucket(**kwargs)
    s3.put_bucket_tagging(Bucket=spec.name, Tagging={"TagSet": base_tags(spec.params["owner"])})
    s3.put_public_access_block(
        Bucket=spec.name,
        PublicAccessBlockConfiguration={
            "BlockPublicAcls": True,
            "IgnorePublicAcls": True,
            "BlockPublicPolicy": True,
            "RestrictPublicBuckets": True,
        },
    )
    logger.info("bucket created: %s", spec.name)
    handle = _bucket_handle(spec.name, state=ResourceState.CREATING)
    handle.transition(ResourceState.AVAILABLE)
    return handle


def list_buckets(ctx, prefix):
    resp = ctx.client("s3").list_buckets()
    return [
        _bucket_handle(b["Name"], b.get("CreationDate"))
        for b in resp.get("Buckets", [])
        if b["Name"].startswith(prefix)
    ]


def bucket_size(ctx, name):
    """Return (object count, total bytes)."""
    count = total = 0
    paginator = ctx.client("s3").get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=name):
        for obj in page.get("Contents", []):
            count += 1
            total += obj.get("Size", 0)
    return count, total


def human_size(num_bytes):
    size = float(num_bytes)
    for unit in ("Bytes", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "Bytes" else f"{size:.1f} {unit}"
        size /= 1024


def empty_and_delete_bucket(ctx, name):
    """Delete every object version and delete marker, then the bucket."""
    s3 = ctx.client("s3")
    paginator = s3.get_paginator("list_object_versions")
    for page in paginator.paginate(Bucket=name):
        objects = [
            {"Key": v["Key"], "VersionId": v["VersionId"]}
            for v in page.get("Versions", []) + page.get("DeleteMarkers", [])
        ]
        # delete_objects takes at most 1000 keys
        for i in range(0, len(objects), 1000):
            s3.delete_objects(Bucket=name, Delete={"Objects": objects[i:i + 1000], "Quiet": True})
    try:
        s3.delete_bucket(Bucket=name)
    except ClientError as e:
        if error_code(e) != "NoSuchBucket":
            raise
        logger.info("bucket %s already deleted", name)


# ---------- click ----------
@click.group(name="s3")
def s3_group():
    """Inspect the S3 bucket created by freetier-stack"""


@s3_group.command("list")
@click.pass_obj
def list_cmd(app):
    """List freetier-stack buckets with their size"""
    ctx = app.run_context()
    buckets = list_buckets(ctx, ctx.names.discovery_prefix(ResourceKind.OBJECT_BUCKET))
    if not buckets:
        click.echo("No freetier-stack buckets found.")
    for b in buckets:
        try:
            count, total = bucket_size(ctx, b.name)
            click.echo(f"{b.name}\t{count} objects\t{human_size(total)}")
        except ClientError as e:
            click.echo(f"{b.name}\tsize unavailable ({error_code(e)})")
