# models.py
"""Data model: resource kinds, specs, handles, outcomes and the run context."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from errors import InvalidTransition


class ResourceKind(Enum):
    KEY_PAIR = "key-pair"
    SECURITY_GROUP = "security-group"
    COMPUTE_INSTANCE = "instance"
    DATABASE = "database"
    OBJECT_BUCKET = "bucket"
    ROLE = "role"


class ResourceState(Enum):
    ABSENT = "absent"
    CREATING = "creating"
    AVAILABLE = "available"
    STOPPING = "stopping"
    DELETING = "deleting"
    DELETED = "deleted"


# Absent -> Creating -> Available -> [Stopping ->] Deleting -> Deleted
# Creating -> Deleting covers teardown of a resource still coming up.
_TRANSITIONS = {
    ResourceState.ABSENT: {ResourceState.CREATING},
    ResourceState.CREATING: {ResourceState.AVAILABLE, ResourceState.DELETING},
    ResourceState.AVAILABLE: {ResourceState.STOPPING, ResourceState.DELETING},
    ResourceState.STOPPING: {ResourceState.DELETING},
    ResourceState.DELETING: {ResourceState.DELETED},
    ResourceState.DELETED: set(),
}
_SETTLED = {ResourceState.ABSENT, ResourceState.AVAILABLE, ResourceState.DELETED}


@dataclass(frozen=True)
class IngressRule:
    """One inbound rule; (protocol, port, cidr) is its identity."""

    protocol: str
    port: int
    cidr: str
    description: str = field(default="", compare=False)

    def to_permission(self) -> dict:
        return {
            "IpProtocol": self.protocol,
            "FromPort": self.port,
            "ToPort": self.port,
            "IpRanges": [{"CidrIp": self.cidr, "Description": self.description}],
        }


@dataclass(frozen=True)
class ResourceSpec:
    """Desired resource, fixed for the duration of a run."""

    kind: ResourceKind
    name: str
    params: dict = field(default_factory=dict)


@dataclass
class ResourceHandle:
    """A realized resource as last observed at the provider.

    Attributes:
        kind: Resource kind
        resource_id: Provider-assigned identifier (instance id, group id, ...)
        name: Name or Name tag the resource was declared with
        state: Lifecycle state
        provider_state: Raw provider status string, if the provider reports one
        created_at: Creation or launch timestamp (timezone aware)
        attributes: Extra provider data (public IP, endpoint, ARN, ...)
    """

    kind: ResourceKind
    resource_id: str
    name: str
    state: ResourceState = ResourceState.AVAILABLE
    provider_state: Optional[str] = None
    created_at: Optional[datetime] = None
    attributes: dict = field(default_factory=dict)
    _observed: Optional[ResourceState] = field(default=None, repr=False, compare=False)

    def __post_init__(self):
        self._observed = self.state

    def can_transition(self, new_state: ResourceState) -> bool:
        return new_state in _TRANSITIONS[self.state]

    def transition(self, new_state: ResourceState) -> None:
        if not self.can_transition(new_state):
            raise InvalidTransition(
                f"{self.kind.value} {self.name}: cannot go from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        if new_state in _SETTLED:
            self._observed = new_state

    def revert(self) -> None:
        """Return to the last settled state after the provider call behind a transition failed."""
        self.state = self._observed

    @property
    def is_live(self) -> bool:
        return self.state not in (ResourceState.ABSENT, ResourceState.DELETING, ResourceState.DELETED)


class OutcomeStatus(Enum):
    SUCCESS = "success"
    ALREADY_SATISFIED = "already-satisfied"
    SKIPPED = "skipped"


@dataclass
class Outcome:
    """Result of an idempotent operation."""

    status: OutcomeStatus
    action: str = ""
    handle: Optional[ResourceHandle] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, action: str, handle: Optional[ResourceHandle] = None) -> "Outcome":
        return cls(OutcomeStatus.SUCCESS, action, handle)

    @classmethod
    def already_satisfied(cls, action: str, handle: Optional[ResourceHandle] = None) -> "Outcome":
        return cls(OutcomeStatus.ALREADY_SATISFIED, action, handle)

    @classmethod
    def skipped(cls, action: str, reason: str, handle: Optional[ResourceHandle] = None) -> "Outcome":
        return cls(OutcomeStatus.SKIPPED, action, handle, reason)

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.SKIPPED

    def __str__(self) -> str:
        text = f"{self.action}: {self.status.value}"
        if self.reason:
            text += f" ({self.reason})"
        return text


@dataclass
class RunContext:
    """Everything one invocation of setup/monitor/cleanup needs.

    The boto3 session carries the credential scope (profile); clients are
    created from it on demand, never stored at module level.
    """

    region: str
    suffix: str
    prefix: str
    session: Any
    account_id: Optional[str] = None
    workdir: Path = field(default_factory=Path.cwd)
    names: Any = None

    def __post_init__(self):
        if self.names is None:
            from naming import ResourceNames

            self.names = ResourceNames(self.prefix, self.suffix)

    def client(self, service: str, region_name: Optional[str] = None):
        return self.session.client(service, region_name=region_name or self.region)
