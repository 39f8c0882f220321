"""
Data models for reporting on delete transactions.

These pydantic models are what the coordinator hands back to callers who want
to inspect a transaction before (or instead of) restoring it.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RestoreState(str, Enum):
    """States of a bulk transaction restore."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMMITTED = "committed"
    ABORTED = "aborted"


class OutstandingEntry(BaseModel):
    """A deletion log entry that has not been restored yet."""

    log_id: int = Field(..., description="ID of the deletion log entry")
    entity_type: str = Field(..., description="Stable type id of the entity")
    entity_id: str = Field(..., description="Primary key of the deleted entity")


class TransactionSummary(BaseModel):
    """Snapshot of a delete transaction and its outstanding entries."""

    id: int = Field(..., description="Delete transaction ID")
    deleted_by_id: int = Field(..., description="Actor who deleted the batch")
    deleted_at: datetime = Field(..., description="Shared deletion timestamp")
    restored_at: Optional[datetime] = Field(
        None, description="When the transaction was fully restored"
    )
    restored_by_id: Optional[int] = Field(
        None, description="Actor who completed the restore"
    )
    total: int = Field(0, description="Entries logged under the transaction")
    outstanding: int = Field(0, description="Entries not yet restored")
    by_type: Dict[str, int] = Field(
        default_factory=dict, description="Outstanding entries by entity type"
    )

    @property
    def is_restored(self) -> bool:
        return self.restored_at is not None


class RestoreResult(BaseModel):
    """Outcome of restoring a whole delete transaction."""

    model_config = ConfigDict(use_enum_values=True, validate_assignment=True)

    transaction_id: int = Field(..., description="Restored delete transaction")
    state: RestoreState = Field(RestoreState.PENDING, description="Final state")
    restored: List[OutstandingEntry] = Field(
        default_factory=list, description="Entries restored, in restore order"
    )
    restored_at: Optional[datetime] = Field(None, description="Restore timestamp")
    restored_by_id: Optional[int] = Field(None, description="Restoring actor")

    @property
    def restored_count(self) -> int:
        return len(self.restored)
