"""
SQLAlchemy mixin for transactional soft deletes.

Entities using the mixin carry a nullable ``delete_transaction_id`` marker. It is
both the deletion flag and the reference to the delete transaction the row was
removed under, which is what allows a whole batch to be recovered at once.
"""

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Type

from sqlalchemy import ColumnElement, Integer, inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, Session, declared_attr, mapped_column, object_session

from .config import get_config
from .exceptions import (
    AlreadyDeletedException,
    MarkerWriteFailure,
    NotFoundFailure,
    TransactionalSoftDeleteError,
    VetoFailure,
)

if TYPE_CHECKING:
    from .coordinator import TransactionCoordinator
    from .query import TransactionalQuery
    from .tables import DeleteTransactionLog

logger = logging.getLogger(__name__)

RestoringHook = Callable[[Any], Optional[bool]]
RestoredHook = Callable[[Any, Optional[BaseException]], None]

# Hooks registered per class; subclasses also fire the hooks of their bases
_restore_hooks: Dict[type, Dict[str, List[Callable[..., Any]]]] = defaultdict(
    lambda: {"restoring": [], "restored": []}
)


class TransactionalSoftDeleteMixin:
    """
    Mixin adding transactional soft delete to SQLAlchemy models.

    Provides:
    - The ``delete_transaction_id`` marker column
    - ``delete()``, ``force_delete()`` and ``restore()`` driven by the
      transaction coordinator bound to the entity's session
    - ``is_deleted`` usable on instances and in queries
    - Restoring/restored hooks

    Usage:
        class Widget(Base, TransactionalSoftDeleteMixin):
            __tablename__ = 'widgets'
            id = Column(Integer, primary_key=True)
            name = Column(String)

    Set ``__deleted_marker_column__`` on a model to use a different column name
    than the configured default, and ``__soft_delete_type__`` to log the model
    under a fixed type id instead of its dotted class path.
    """

    _force_deleting = False

    @declared_attr
    def delete_transaction_id(cls) -> Mapped[Optional[int]]:
        column_name = (
            getattr(cls, "__deleted_marker_column__", None)
            or get_config().deleted_marker_column
        )
        return mapped_column(column_name, Integer, nullable=True, index=True)

    @hybrid_property
    def is_deleted(self) -> bool:
        """True when the row is soft deleted."""
        return self.delete_transaction_id is not None

    @is_deleted.inplace.expression
    @classmethod
    def _is_deleted_expression(cls) -> ColumnElement[bool]:
        return cls.delete_transaction_id.is_not(None)

    @classmethod
    def soft_delete_type(cls) -> str:
        """Return the stable type id written to the deletion log."""
        return (
            getattr(cls, "__soft_delete_type__", None)
            or f"{cls.__module__}.{cls.__qualname__}"
        )

    def soft_delete_identity(self) -> Any:
        """Return the primary key value written to the deletion log."""
        mapper = inspect(type(self))
        if len(mapper.primary_key) != 1:
            raise TransactionalSoftDeleteError(
                f"{self.soft_delete_type()} must have a single column primary key",
                entity_type=self.soft_delete_type(),
            )
        return mapper.primary_key_from_instance(self)[0]

    def _coordinator(
        self, coordinator: Optional["TransactionCoordinator"] = None
    ) -> "TransactionCoordinator":
        if coordinator is not None:
            return coordinator

        session = object_session(self)
        if session is None:
            raise TransactionalSoftDeleteError(
                f"{self.soft_delete_type()} is not attached to a session",
                entity_type=self.soft_delete_type(),
            )

        from .coordinator import get_coordinator

        return get_coordinator(session)

    def _flushed_identity(self, session: Session) -> Any:
        entity_id = self.soft_delete_identity()
        if entity_id is None:
            # Pending rows get their key on flush
            try:
                session.flush()
            except SQLAlchemyError as exc:
                raise MarkerWriteFailure(
                    self.soft_delete_type(), None, str(exc)
                ) from exc
            entity_id = self.soft_delete_identity()
        return entity_id

    def delete(
        self, coordinator: Optional["TransactionCoordinator"] = None
    ) -> "DeleteTransactionLog":
        """
        Soft delete this record under the current delete transaction.

        The deletion log entry and the marker are written in one store
        transaction; if either write fails both are rolled back.

        Args:
            coordinator: Coordinator to use, defaults to the session's one

        Returns:
            The deletion log entry written for this record

        Raises:
            AlreadyDeletedException: If the record is already deleted
            LogWriteFailure: If the log entry could not be written
            MarkerWriteFailure: If the marker could not be persisted
        """
        coordinator = self._coordinator(coordinator)
        entity_type = self.soft_delete_type()

        if self.delete_transaction_id is not None:
            raise AlreadyDeletedException(
                entity_type, self.soft_delete_identity(), self.delete_transaction_id
            )

        with coordinator.atomic() as session:
            entity_id = self._flushed_identity(session)
            entry = coordinator.record_deletion(entity_type, entity_id)
            self.delete_transaction_id = entry.delete_transaction_id
            try:
                session.flush()
            except SQLAlchemyError as exc:
                raise MarkerWriteFailure(entity_type, entity_id, str(exc)) from exc
            transaction_id = entry.delete_transaction_id

        logger.debug(
            f"Soft deleted {entity_type} {entity_id} under transaction "
            f"{transaction_id}"
        )
        return entry

    def force_delete(
        self, coordinator: Optional["TransactionCoordinator"] = None
    ) -> None:
        """Permanently remove this record without writing to the deletion log."""
        coordinator = self._coordinator(coordinator)
        entity_type = self.soft_delete_type()
        entity_id = self.soft_delete_identity()

        with coordinator.atomic() as session:
            self._force_deleting = True
            try:
                session.delete(self)
                session.flush()
            except SQLAlchemyError as exc:
                raise TransactionalSoftDeleteError(
                    f"Unable to remove {entity_type} {entity_id}: {exc}",
                    entity_type=entity_type,
                    entity_id=entity_id,
                ) from exc
            finally:
                self._force_deleting = False

        logger.info(f"Permanently deleted {entity_type} {entity_id}")

    def restore(
        self,
        coordinator: Optional["TransactionCoordinator"] = None,
        pre_check: Optional[RestoringHook] = None,
        on_restored: Optional[RestoredHook] = None,
    ) -> None:
        """
        Restore this soft-deleted record.

        Restoring hooks run first and may veto by returning ``False``. The
        marker is then cleared, the matching log entry marked restored and the
        delete transaction closed if nothing else in it is outstanding.
        Restored hooks are notified once the outermost store transaction has
        committed (error ``None``) or rolled back (the exception).

        Args:
            coordinator: Coordinator to use, defaults to the session's one
            pre_check: Extra restoring hook for this call only
            on_restored: Extra restored hook for this call only

        Raises:
            VetoFailure: If a restoring hook declined
            NotFoundFailure: If the record is not deleted or nothing is
                outstanding for it in the log
            MarkerWriteFailure: If the cleared marker could not be persisted
            LogWriteFailure: If the log could not be updated
        """
        coordinator = self._coordinator(coordinator)
        entity_type = self.soft_delete_type()
        entity_id = self.soft_delete_identity()

        if not self._fire_restoring(pre_check):
            logger.info(f"Restore of {entity_type} {entity_id} vetoed")
            raise VetoFailure(entity_type, entity_id)

        def notify(error: Optional[BaseException]) -> None:
            self._fire_restored(error, on_restored)

        with coordinator.atomic(on_outcome=notify) as session:
            transaction_id = self.delete_transaction_id
            if transaction_id is None:
                raise NotFoundFailure(
                    f"{entity_type} {entity_id} is not deleted",
                    entity_type=entity_type,
                    entity_id=entity_id,
                )

            self.delete_transaction_id = None
            try:
                session.flush()
            except SQLAlchemyError as exc:
                raise MarkerWriteFailure(entity_type, entity_id, str(exc)) from exc

            actor_id = coordinator.actor_id()
            timestamp = coordinator.restore_timestamp()
            coordinator.record_restore(entity_type, entity_id, actor_id, timestamp)
            coordinator.close_transaction_if_empty(transaction_id, actor_id, timestamp)

        logger.debug(
            f"Restored {entity_type} {entity_id} from transaction {transaction_id}"
        )

    def new_delete_transaction(
        self, coordinator: Optional["TransactionCoordinator"] = None
    ) -> "TransactionalSoftDeleteMixin":
        """Start a new delete transaction and return self for chaining."""
        self._coordinator(coordinator).new_transaction()
        return self

    @classmethod
    def on_restoring(cls, callback: RestoringHook) -> None:
        """Register a hook called before restore; returning False vetoes it."""
        _restore_hooks[cls]["restoring"].append(callback)

    @classmethod
    def on_restored(cls, callback: RestoredHook) -> None:
        """Register a hook called with (entity, error) after a restore attempt."""
        _restore_hooks[cls]["restored"].append(callback)

    @classmethod
    def clear_restore_hooks(cls) -> None:
        """Remove hooks registered directly on this class."""
        _restore_hooks.pop(cls, None)

    @classmethod
    def _hooks(cls, kind: str) -> List[Callable[..., Any]]:
        hooks: List[Callable[..., Any]] = []
        for klass in reversed(cls.__mro__):
            if klass in _restore_hooks:
                hooks.extend(_restore_hooks[klass][kind])
        return hooks

    def _fire_restoring(self, pre_check: Optional[RestoringHook]) -> bool:
        hooks = self._hooks("restoring")
        if pre_check is not None:
            hooks.append(pre_check)
        return all(hook(self) is not False for hook in hooks)

    def _fire_restored(
        self, error: Optional[BaseException], on_restored: Optional[RestoredHook]
    ) -> None:
        hooks = self._hooks("restored")
        if on_restored is not None:
            hooks.append(on_restored)
        for hook in hooks:
            hook(self, error)

    @classmethod
    def query(cls, session: Session) -> "TransactionalQuery":
        """
        Return a query that hides deleted records unless told otherwise.

        Args:
            session: SQLAlchemy session

        Returns:
            Query supporting include_deleted/only_deleted/exclude_deleted
        """
        from .query import TransactionalQuery, enable_soft_delete_filter

        enable_soft_delete_filter(session)
        return TransactionalQuery(cls, session=session)

    @classmethod
    def query_with_deleted(cls, session: Session) -> "TransactionalQuery":
        """Return query for all records including deleted."""
        return cls.query(session).include_deleted()

    @classmethod
    def query_only_deleted(cls, session: Session) -> "TransactionalQuery":
        """Return query for deleted records only."""
        return cls.query(session).only_deleted()


def prevent_hard_delete(mapper: Any, connection: Any, target: Any) -> None:
    """
    Prevent hard deletes on models with TransactionalSoftDeleteMixin.

    This function is connected to SQLAlchemy's before_delete event by
    :func:`transactional_soft_deletes.registry.register_soft_delete_models`.
    """
    if isinstance(target, TransactionalSoftDeleteMixin) and not target._force_deleting:
        raise RuntimeError(
            f"Hard delete attempted on {target.__class__.__name__}. "
            "Use delete() or force_delete() instead."
        )


def soft_deletable_classes(base_class: Type[Any]) -> List[Type[Any]]:
    """Return the mapped classes of a declarative base using the mixin."""
    return [
        mapper.class_
        for mapper in base_class.registry.mappers
        if issubclass(mapper.class_, TransactionalSoftDeleteMixin)
    ]
