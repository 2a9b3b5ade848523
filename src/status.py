"""
Sync Status - The scope's externally visible sync state.

The applier's error list is replaced wholesale at the end of every cycle;
conflicts come from the Remediator and are refreshed independently.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from errors import ManagementConflictError, SyncError, to_status_list

logger = logging.getLogger(__name__)


class ErrorEntry(BaseModel):
    """One error in sync status."""

    code: str
    message: str
    resources: List[str] = Field(default_factory=list)


class ConflictEntry(BaseModel):
    """A declared object currently managed by another scope."""

    resource: str
    current_owner: str
    claimant: str
    message: str


class KindOperations(BaseModel):
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unmanaged: int = 0


class SyncStatus(BaseModel):
    """Status of one reconciler scope."""

    scope: str
    revision: str = ""
    syncing: bool = False
    last_sync_time: Optional[datetime] = None
    last_sync_duration_seconds: float = 0.0
    operations: Dict[str, KindOperations] = Field(default_factory=dict)
    errors: List[ErrorEntry] = Field(default_factory=list)
    conflicts: List[ConflictEntry] = Field(default_factory=list)
    remediation_errors: List[ErrorEntry] = Field(default_factory=list)
    drift_corrections: int = 0
    watched_kinds: List[str] = Field(default_factory=list)
    inventory_size: int = 0

    @property
    def healthy(self) -> bool:
        return not self.errors and not self.conflicts


class ResourceRef(BaseModel):
    group: str
    version: str
    kind: str
    namespace: str = ""
    name: str


class InventoryResponse(BaseModel):
    """The scope's inventory as reported by the API."""

    scope: str
    name: str
    namespace: str
    resources: List[ResourceRef] = Field(default_factory=list)


def _errors(errors: Iterable[SyncError]) -> List[ErrorEntry]:
    return [ErrorEntry(**entry) for entry in to_status_list(errors)]


def _conflicts(conflicts: Iterable[ManagementConflictError]) -> List[ConflictEntry]:
    entries = [
        ConflictEntry(
            resource=str(c.resource_id),
            current_owner=c.current_owner,
            claimant=c.claimant,
            message=c.message,
        )
        for c in conflicts
    ]
    return sorted(entries, key=lambda e: e.resource)


class StatusReporter:
    """Keeps the current SyncStatus of one scope."""

    def __init__(self, scope: str):
        self._status = SyncStatus(scope=scope)

    @property
    def status(self) -> SyncStatus:
        return self._status.model_copy(deep=True)

    def begin_sync(self) -> None:
        self._status.syncing = True

    def record_source_error(self, error: SyncError) -> None:
        """A cycle ended before apply; the previous revision stays in place."""
        self._status.syncing = False
        self._status.errors = _errors([error])
        self._status.last_sync_time = datetime.now(timezone.utc)

    def record_cycle(
        self,
        revision: str,
        errors: Iterable[SyncError],
        operations: Dict[str, Dict[str, int]],
        duration_seconds: float = 0.0,
        watched_kinds: Iterable[Any] = (),
        inventory_size: int = 0,
    ) -> None:
        status = self._status
        status.syncing = False
        status.revision = revision
        status.errors = _errors(errors)
        status.operations = {
            kind: KindOperations(**counts) for kind, counts in sorted(operations.items())
        }
        status.last_sync_time = datetime.now(timezone.utc)
        status.last_sync_duration_seconds = round(duration_seconds, 3)
        status.watched_kinds = sorted(str(k) for k in watched_kinds)
        status.inventory_size = inventory_size
        if status.errors:
            logger.info(f"Sync of revision {revision} finished with {len(status.errors)} errors")

    def record_remediation(
        self,
        conflicts: Iterable[ManagementConflictError],
        errors: Iterable[SyncError] = (),
        corrections: int = 0,
    ) -> None:
        self._status.conflicts = _conflicts(conflicts)
        self._status.remediation_errors = _errors(errors)
        self._status.drift_corrections = corrections
