"""
Sync Errors - Error taxonomy for the reconciler.

Every error that reaches the status surface carries a stable code, a
human-readable message and the identities of the offending resources.
Transport failures from the cluster API are kept separate as
ClusterAPIError so retry logic can classify them.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

# HTTP statuses worth retrying: version conflict, throttling, server busy.
RETRYABLE_STATUSES = {409, 429, 500, 502, 503, 504}


class ClusterAPIError(Exception):
    """Raised when the cluster API server rejects a request."""

    def __init__(self, status: int, reason: str = "", message: str = ""):
        self.status = status
        self.reason = reason
        self.message = message or reason or f"HTTP {status}"
        super().__init__(f"{status} {reason}: {self.message}")

    @property
    def not_found(self) -> bool:
        return self.status == 404

    @property
    def conflict(self) -> bool:
        return self.status == 409

    @property
    def already_exists(self) -> bool:
        return self.status == 409 and self.reason == "AlreadyExists"

    @property
    def gone(self) -> bool:
        return self.status == 410


def is_retryable(exc: BaseException) -> bool:
    """Return True for transient failures (network, conflict, server busy)."""
    if isinstance(exc, ClusterAPIError):
        return exc.status in RETRYABLE_STATUSES
    if isinstance(exc, InventoryConflictError):
        return True
    return isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError))


class SyncError(Exception):
    """Base class for errors surfaced in sync status."""

    code = "0000"

    def __init__(self, message: str, resources: Optional[Iterable[Any]] = None):
        self.message = message
        self.resources = list(resources or [])
        super().__init__(message)

    def to_status(self) -> Dict[str, Any]:
        """Convert to a status entry."""
        return {
            "code": self.code,
            "message": self.message,
            "resources": sorted(str(r) for r in self.resources),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code}: {self.message})"


class SourceError(SyncError):
    """The declared set could not be produced."""

    code = "2004"


class GraphCycleError(SyncError):
    """A subset of declared resources forms a dependency cycle."""

    code = "1064"

    def __init__(self, members: Iterable[Any], dependents: Iterable[Any] = ()):
        self.members = sorted(members, key=_sort_key)
        self.dependents = sorted(dependents, key=_sort_key)
        message = "cyclic dependency between: " + ", ".join(
            str(m) for m in self.members
        )
        if self.dependents:
            message += "; skipped dependents: " + ", ".join(
                str(d) for d in self.dependents
            )
        super().__init__(message, self.members)


class DependencyError(SyncError):
    """A depends-on reference is malformed or points outside the declared set."""

    code = "1065"


class ScopeError(SyncError):
    """A namespace-scoped reconciler declared an object outside its namespace."""

    code = "1058"


class UnknownKindError(SyncError):
    """The cluster does not serve the declared kind."""

    code = "1021"


class ApplyError(SyncError):
    """A single resource's create, update or delete was rejected."""

    code = "2009"


class ManagementConflictError(SyncError):
    """A declared resource is managed live by a different reconciler scope."""

    code = "1060"

    def __init__(self, resource_id: Any, current_owner: str, claimant: str):
        self.resource_id = resource_id
        self.current_owner = current_owner
        self.claimant = claimant
        super().__init__(
            f"{resource_id} is declared by {claimant!r} but managed by "
            f"{current_owner!r}; remove the declaration from one of them",
            [resource_id],
        )


class InventoryConflictError(SyncError):
    """Optimistic-concurrency failure writing the inventory object."""

    code = "2012"


class PruneBlockedError(SyncError):
    """A prune was skipped because a declared object still depends on it."""

    code = "2013"


def _sort_key(item: Any):
    return getattr(item, "sort_key", str(item))


def to_status_list(errors: Iterable[SyncError]) -> List[Dict[str, Any]]:
    """Convert errors to status entries in a stable order."""
    entries = [e.to_status() for e in errors]
    return sorted(entries, key=lambda e: (e["code"], e["resources"], e["message"]))
