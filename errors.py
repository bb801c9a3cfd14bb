# errors.py
"""Error types raised by freetier-stack.

Not-found and already-exists are never errors here; they are reported as
Outcome values by the reconciler and the teardown executor.
"""


class FreeTierError(Exception):
    """Base class for fatal errors surfaced to the operator."""


class PreflightError(FreeTierError):
    """Credentials are missing or invalid."""


class ProbeError(FreeTierError):
    """A describe/list call failed, so existence is unknown."""

    def __init__(self, kind, name, cause):
        self.kind = kind
        self.name = name
        self.cause = cause
        super().__init__(f"could not check {kind.value} {name!r}: {cause}")


class CreationError(FreeTierError):
    """A required resource could not be created."""

    def __init__(self, kind, name, region, cause, completed=None):
        self.kind = kind
        self.name = name
        self.region = region
        self.cause = cause
        self.completed = list(completed or [])
        super().__init__(f"failed to create {kind.value} {name!r} in {region}: {cause}")


class InvalidTransition(ValueError):
    """A ResourceHandle was asked for a state change its lifecycle forbids."""
