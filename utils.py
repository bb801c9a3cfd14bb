# utils.py
import logging
import os

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from config import TAG_CREATEDBY_KEY, TAG_CREATEDBY_VAL, TAG_OWNER_KEY
from errors import PreflightError

logger = logging.getLogger(__name__)

# error codes meaning "the thing is not there"
NOT_FOUND_CODES = {
    "InvalidInstanceID.NotFound",
    "InvalidKeyPair.NotFound",
    "InvalidGroup.NotFound",
    "InvalidGroupId.NotFound",
    "DBInstanceNotFound",
    "DBInstanceNotFoundFault",
    "NoSuchBucket",
    "NoSuchEntity",
    "404",
    "NotFound",
}

AMI_ALIASES = {
    "amazon-linux": [
        "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-6.1-x86_64",
        "/aws/service/ami-amazon-linux-latest/amzn2-ami-hvm-x86_64-gp2",
    ],
    "ubuntu": [
        "/aws/service/canonical/ubuntu/server/24.04/stable/current/amd64/hvm/ebs-gp3/ami-id",
        "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id",
    ],
}


def setup_logging(verbose=False, log_file=None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )
    # botocore is chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def make_session(profile=None, region=None):
    return boto3.session.Session(profile_name=profile, region_name=region)


def preflight(session):
    """Check credentials with STS; returns the account id."""
    try:
        identity = session.client("sts").get_caller_identity()
    except (NoCredentialsError, ClientError, BotoCoreError) as e:
        raise PreflightError(
            f"AWS credentials are not configured or invalid ({e}). Run 'aws configure' first."
        ) from e
    logger.debug("running as %s", identity.get("Arn"))
    return identity["Account"]


def error_code(err):
    return err.response.get("Error", {}).get("Code", "Unknown")


def is_not_found(err):
    code = error_code(err)
    return code in NOT_FOUND_CODES or code.endswith(".NotFound")


def tags_to_dict(tags):
    return {t["Key"]: t["Value"] for t in tags or []}


def base_tags(owner, name=None):
    """Tags every created resource carries: CreatedBy, Owner and optionally Name."""
    tags = [
        {"Key": TAG_CREATEDBY_KEY, "Value": TAG_CREATEDBY_VAL},
        {"Key": TAG_OWNER_KEY, "Value": owner},
    ]
    if name:
        tags.insert(0, {"Key": "Name", "Value": name})
    return tags


def tag_specification(resource_type, owner, name=None):
    return [{"ResourceType": resource_type, "Tags": base_tags(owner, name)}]


def created_by_us(tags):
    return tags_to_dict(tags).get(TAG_CREATEDBY_KEY) == TAG_CREATEDBY_VAL


def resolve_ami(ssm, ami):
    """Return AMI ID. Supports literals (ami-xxxx), 'amazon-linux', 'ubuntu' via SSM."""
    if ami.startswith("ami-"):
        return ami
    if ami not in AMI_ALIASES:
        raise ValueError(f"unknown AMI alias {ami!r}; use ami-xxxxxxxx, 'amazon-linux' or 'ubuntu'")
    for name in AMI_ALIASES[ami]:
        try:
            return ssm.get_parameter(Name=name)["Parameter"]["Value"]
        except ClientError as e:
            logger.debug("SSM parameter %s unavailable: %s", name, e)
            continue
    raise ValueError(f"could not resolve AMI alias {ami!r}; pass an explicit ami-xxxxxxxx")


def write_private_file(path, content):
    """Write content readable and writable by the owner only (0600)."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(content)
    os.chmod(path, 0o600)
    return path
