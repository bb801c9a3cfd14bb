# naming.py
"""Resource names derived from a name prefix and a run suffix."""

import hashlib
import re
import time
from dataclasses import dataclass
from typing import Optional

from models import ResourceKind

_SUFFIX_RE = re.compile(r"^[a-z0-9][a-z0-9-]{0,19}$")


def validate_suffix(suffix):
    if not _SUFFIX_RE.match(suffix or ""):
        raise ValueError(
            f"invalid suffix {suffix!r}: use 1-20 lowercase letters, digits or '-'"
        )
    return suffix


def deterministic_suffix(account_id, region):
    """Same account and region always give the same suffix, so re-runs converge."""
    digest = hashlib.sha256(f"{account_id}:{region}".encode()).hexdigest()
    return digest[:8]


def unique_suffix(now=None):
    return str(int(now if now is not None else time.time()))


@dataclass(frozen=True)
class ResourceNames:
    """Names for one run.

    The key pair, security group and database take ``<base>-<suffix>``; the
    bases default to ``<prefix>-key``, ``<prefix>-sg`` and ``<prefix>-db``.
    Teardown and monitoring discover resources by ``<base>-``, so they
    also find what earlier runs with other suffixes left behind.
    """

    prefix: str
    suffix: str
    key_base: Optional[str] = None
    group_base: Optional[str] = None
    database_base: Optional[str] = None

    @classmethod
    def from_settings(cls, settings, suffix):
        return cls(
            settings.name_prefix,
            suffix,
            key_base=settings.key_pair_base,
            group_base=settings.security_group_base,
            database_base=settings.database_base,
        )

    def _bases(self):
        return {
            ResourceKind.KEY_PAIR: self.key_base or f"{self.prefix}-key",
            ResourceKind.SECURITY_GROUP: self.group_base or f"{self.prefix}-sg",
            ResourceKind.DATABASE: self.database_base or f"{self.prefix}-db",
            ResourceKind.OBJECT_BUCKET: f"{self.prefix}-app-storage",
            ResourceKind.COMPUTE_INSTANCE: f"{self.prefix}-web",
        }

    @property
    def key_pair(self):
        return self.for_kind(ResourceKind.KEY_PAIR)

    @property
    def security_group(self):
        return self.for_kind(ResourceKind.SECURITY_GROUP)

    @property
    def database(self):
        return self.for_kind(ResourceKind.DATABASE)

    @property
    def bucket(self):
        return self.for_kind(ResourceKind.OBJECT_BUCKET)

    @property
    def instance(self):
        return self.for_kind(ResourceKind.COMPUTE_INSTANCE)

    # IAM is global; one role/profile pair serves every run
    @property
    def role(self):
        return f"{self.prefix}-ec2-s3-role"

    @property
    def instance_profile(self):
        return f"{self.prefix}-ec2-s3-profile"

    def for_kind(self, kind):
        if kind is ResourceKind.ROLE:
            return self.role
        return f"{self._bases()[kind]}-{self.suffix}"

    def discovery_prefix(self, kind):
        """Prefix matching this kind's resources from any run."""
        if kind is ResourceKind.ROLE:
            return f"{self.prefix}-ec2-s3-"
        return f"{self._bases()[kind]}-"
