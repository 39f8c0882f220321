"""Exceptions for transactional soft delete operations."""

from typing import Any, Optional


class TransactionalSoftDeleteError(Exception):
    """Base exception for transactional soft delete operations."""

    def __init__(
        self,
        message: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[Any] = None,
        transaction_id: Optional[int] = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.transaction_id = transaction_id
        super().__init__(message)


class TransactionOpenFailure(TransactionalSoftDeleteError):
    """Raised when the store refuses to begin a transaction."""

    def __init__(self, reason: str):
        super().__init__(f"Unable to begin a store transaction: {reason}")


class LogWriteFailure(TransactionalSoftDeleteError):
    """Raised when a delete transaction or log entry cannot be written."""


class MarkerWriteFailure(TransactionalSoftDeleteError):
    """Raised when the deletion marker of an entity cannot be persisted."""

    def __init__(self, entity_type: str, entity_id: Any, reason: str):
        super().__init__(
            f"Unable to persist deletion marker of {entity_type} {entity_id}: "
            f"{reason}",
            entity_type=entity_type,
            entity_id=entity_id,
        )


class IntegrityFault(TransactionalSoftDeleteError):
    """Raised when the deletion log references something that cannot be restored."""


class NotFoundFailure(TransactionalSoftDeleteError):
    """Raised when there is nothing outstanding to restore."""


class VetoFailure(TransactionalSoftDeleteError):
    """Raised when a restoring hook declines the restore."""

    def __init__(self, entity_type: str, entity_id: Any):
        super().__init__(
            f"Restore of {entity_type} {entity_id} was vetoed",
            entity_type=entity_type,
            entity_id=entity_id,
        )


class AlreadyDeletedException(TransactionalSoftDeleteError):
    """Raised when attempting to delete an already deleted entity."""

    def __init__(self, entity_type: str, entity_id: Any, transaction_id: int):
        super().__init__(
            f"{entity_type} {entity_id} is already deleted "
            f"under transaction {transaction_id}",
            entity_type=entity_type,
            entity_id=entity_id,
            transaction_id=transaction_id,
        )


class CommitFailure(TransactionalSoftDeleteError):
    """Raised when the store rejects the commit of a transaction."""


class RestoreTimeout(TransactionalSoftDeleteError):
    """Raised when a bulk restore runs longer than the configured timeout."""

    def __init__(self, transaction_id: int, timeout: float):
        super().__init__(
            f"Restore of delete transaction {transaction_id} exceeded "
            f"{timeout} seconds",
            transaction_id=transaction_id,
        )
