"""
Query filtering for soft-deletable models.

Once :func:`enable_soft_delete_filter` is installed on a session (or session
class/factory), every ORM select hides rows whose deletion marker is set.
The ``include_deleted`` execution option lifts the filter; ``TransactionalQuery``
wraps that into ``include_deleted()``, ``only_deleted()`` and
``exclude_deleted()``.
"""

import logging
from typing import Any, Optional, Type, Union

from sqlalchemy import event
from sqlalchemy.orm import ORMExecuteState, Query, Session, sessionmaker, with_loader_criteria

from .mixins import TransactionalSoftDeleteMixin

logger = logging.getLogger(__name__)

INCLUDE_DELETED = "include_deleted"

FilterTarget = Union[Session, Type[Session], sessionmaker]  # type: ignore[type-arg]


def _add_soft_delete_criteria(execute_state: ORMExecuteState) -> None:
    """Hide soft-deleted rows from top level ORM selects."""
    if (
        execute_state.is_select
        and not execute_state.is_column_load
        and not execute_state.is_relationship_load
        and not execute_state.execution_options.get(INCLUDE_DELETED, False)
    ):
        execute_state.statement = execute_state.statement.options(
            with_loader_criteria(
                TransactionalSoftDeleteMixin,
                lambda cls: cls.delete_transaction_id.is_(None),
                include_aliases=True,
            )
        )


def enable_soft_delete_filter(target: FilterTarget = Session) -> None:
    """
    Install the default "hide deleted rows" filter.

    Args:
        target: A Session instance, the Session class or a sessionmaker
    """
    if not event.contains(target, "do_orm_execute", _add_soft_delete_criteria):
        event.listen(target, "do_orm_execute", _add_soft_delete_criteria)


def disable_soft_delete_filter(target: FilterTarget = Session) -> None:
    """Remove the filter installed by :func:`enable_soft_delete_filter`."""
    if event.contains(target, "do_orm_execute", _add_soft_delete_criteria):
        event.remove(target, "do_orm_execute", _add_soft_delete_criteria)


class TransactionalQuery(Query):  # type: ignore[type-arg]
    """
    Query with soft delete aware filters and per-row delete/restore.

    Usage:
        Widget.query(session).only_deleted().filter(Widget.name == "x").all()
        Widget.query(session).filter(Widget.owner_id == 7).delete()
    """

    def _soft_delete_entity(self) -> Optional[Type[TransactionalSoftDeleteMixin]]:
        if not self.column_descriptions:
            return None
        entity = self.column_descriptions[0].get("entity")
        if isinstance(entity, type) and issubclass(
            entity, TransactionalSoftDeleteMixin
        ):
            return entity
        return None

    def _require_soft_delete_entity(self) -> Type[TransactionalSoftDeleteMixin]:
        entity = self._soft_delete_entity()
        if entity is None:
            raise TypeError("Query is not against a soft-deletable model")
        return entity

    def include_deleted(self) -> "TransactionalQuery":
        """Return both deleted and live rows."""
        return self.execution_options(**{INCLUDE_DELETED: True})

    def only_deleted(self) -> "TransactionalQuery":
        """Return deleted rows only."""
        entity = self._require_soft_delete_entity()
        return self.include_deleted().filter(entity.delete_transaction_id.is_not(None))

    def exclude_deleted(self) -> "TransactionalQuery":
        """Return live rows only, even after include_deleted() was applied."""
        entity = self._require_soft_delete_entity()
        return self.include_deleted().filter(entity.delete_transaction_id.is_(None))

    def delete(self, *args: Any, **kwargs: Any) -> int:
        """
        Soft delete every matched row through its own ``delete()``.

        All rows are logged under one delete transaction and committed together.
        Rows already deleted are skipped. Queries against other models fall
        back to the regular bulk DELETE.

        Returns:
            Number of rows deleted
        """
        if self._soft_delete_entity() is None:
            return super().delete(*args, **kwargs)

        from .coordinator import get_coordinator

        coordinator = get_coordinator(self.session)
        count = 0
        with coordinator.atomic():
            for instance in self.all():
                if instance.is_deleted:
                    continue
                instance.delete(coordinator)
                count += 1

        logger.info(f"Soft deleted {count} rows")
        return count

    def restore(self) -> int:
        """
        Restore every deleted row matched by this query through its own
        ``restore()``, all or nothing.

        Returns:
            Number of rows restored
        """
        from .coordinator import get_coordinator

        coordinator = get_coordinator(self.session)
        count = 0
        with coordinator.atomic():
            for instance in self.only_deleted().all():
                instance.restore(coordinator)
                count += 1

        logger.info(f"Restored {count} rows")
        return count

    def force_delete(self) -> int:
        """Permanently remove every matched row, deleted or not."""
        from .coordinator import get_coordinator

        self._require_soft_delete_entity()
        coordinator = get_coordinator(self.session)
        count = 0
        with coordinator.atomic():
            for instance in self.all():
                instance.force_delete(coordinator)
                count += 1

        return count
