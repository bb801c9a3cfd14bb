# summary.py
"""Plaintext summary of a setup run, with .env lines for the Laravel app."""

from datetime import datetime, timezone

from models import ResourceKind
from utils import write_private_file


def render_summary(ctx, settings, handles, db_password, now=None):
    now = now or datetime.now(timezone.utc)

    def attr(kind, key, default="-"):
        handle = handles.get(kind)
        if handle is None:
            return default
        return handle.attributes.get(key) or default

    def ident(kind):
        handle = handles.get(kind)
        return handle.resource_id if handle else "-"

    key = handles.get(ResourceKind.KEY_PAIR)
    public_ip = attr(ResourceKind.COMPUTE_INSTANCE, "public_ip")
    db_host = attr(ResourceKind.DATABASE, "endpoint")
    bucket = ident(ResourceKind.OBJECT_BUCKET)

    lines = [
        f"# Laravel AWS resources, generated {now.strftime('%Y-%m-%d %H:%M:%S UTC')}",
        f"REGION={ctx.region}",
        f"ACCOUNT_ID={ctx.account_id or '-'}",
        f"RUN_SUFFIX={ctx.suffix}",
        f"KEY_PAIR={key.name if key else '-'}",
        f"KEY_FILE={attr(ResourceKind.KEY_PAIR, 'key_file')}",
        f"SECURITY_GROUP_ID={ident(ResourceKind.SECURITY_GROUP)}",
        f"IAM_ROLE={handles[ResourceKind.ROLE].name if ResourceKind.ROLE in handles else '-'}",
        f"INSTANCE_PROFILE={attr(ResourceKind.ROLE, 'instance_profile')}",
        f"INSTANCE_ID={ident(ResourceKind.COMPUTE_INSTANCE)}",
        f"PUBLIC_IP={public_ip}",
        f"DB_INSTANCE_ID={ident(ResourceKind.DATABASE)}",
        f"DB_ENDPOINT={db_host}",
        f"BUCKET_NAME={bucket}",
        "",
        "# SSH",
        f"# ssh -i {attr(ResourceKind.KEY_PAIR, 'key_file')} ec2-user@{public_ip}",
        "",
        "# .env for the Laravel application",
        f"APP_URL=http://{public_ip}",
        "DB_CONNECTION=mysql",
        f"DB_HOST={db_host}",
        f"DB_PORT={settings.db_port}",
        f"DB_DATABASE={settings.db_name}",
        f"DB_USERNAME={settings.db_username}",
        f"DB_PASSWORD={db_password or ''}",
        "FILESYSTEM_DISK=s3",
        f"AWS_DEFAULT_REGION={ctx.region}",
        f"AWS_BUCKET={bucket}",
        "",
    ]
    return "\n".join(lines)


def write_summary(ctx, settings, handles, db_password, now=None):
    """Write the summary file; it holds the DB password so it is 0600."""
    path = ctx.workdir / settings.summary_file
    write_private_file(path, render_summary(ctx, settings, handles, db_password, now))
    return path
