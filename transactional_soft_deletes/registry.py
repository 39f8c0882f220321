"""
Registry of soft-deletable entity types.

The deletion log stores a type id string for every row. Bulk restore resolves
that string through an ``EntityRegistry`` populated at startup; a type id that
is not registered means the log cannot be trusted.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional, Type

from sqlalchemy import event, inspect
from sqlalchemy.orm import Session

from .exceptions import IntegrityFault
from .mixins import (
    TransactionalSoftDeleteMixin,
    prevent_hard_delete,
    soft_deletable_classes,
)
from .query import INCLUDE_DELETED, FilterTarget, enable_soft_delete_filter

logger = logging.getLogger(__name__)


class EntityRegistry:
    """Maps stable type ids to soft-deletable model classes."""

    def __init__(self) -> None:
        self._types: Dict[str, Type[TransactionalSoftDeleteMixin]] = {}

    def register(self, entity_class: Type[Any]) -> str:
        """
        Register a model class.

        Args:
            entity_class: Mapped class using TransactionalSoftDeleteMixin

        Returns:
            The type id the class is registered under

        Raises:
            TypeError: If the class does not use the mixin
            ValueError: If another class already owns the type id
        """
        if not (
            isinstance(entity_class, type)
            and issubclass(entity_class, TransactionalSoftDeleteMixin)
        ):
            raise TypeError(
                f"{entity_class!r} does not implement TransactionalSoftDeleteMixin"
            )

        type_id = entity_class.soft_delete_type()
        existing = self._types.get(type_id)
        if existing is not None and existing is not entity_class:
            raise ValueError(
                f"Type id {type_id} is already registered to {existing.__name__}"
            )

        self._types[type_id] = entity_class
        logger.debug(f"Registered soft-deletable type {type_id}")
        return type_id

    def unregister(self, type_id: str) -> None:
        self._types.pop(type_id, None)

    def resolve(self, type_id: str) -> Type[TransactionalSoftDeleteMixin]:
        """
        Return the class registered for a type id.

        Raises:
            IntegrityFault: If nothing is registered under the type id
        """
        try:
            return self._types[type_id]
        except KeyError:
            raise IntegrityFault(
                f"Entity type {type_id} is not registered as soft-deletable",
                entity_type=type_id,
            ) from None

    def type_id_for(self, entity_class: Type[Any]) -> Optional[str]:
        for type_id, registered in self._types.items():
            if registered is entity_class:
                return type_id
        return None

    def load(
        self, type_id: str, entity_id: Any, session: Session
    ) -> Optional[TransactionalSoftDeleteMixin]:
        """
        Load an entity by logged type id and primary key, deleted or not.

        Args:
            type_id: Type id from the deletion log
            entity_id: Primary key as stored in the deletion log
            session: Session to load through

        Returns:
            The entity, or None if the row no longer exists

        Raises:
            IntegrityFault: If the type is unknown or the key cannot be
                converted to the model's primary key type
        """
        entity_class = self.resolve(type_id)
        key = _coerce_identity(entity_class, type_id, entity_id)
        return session.get(
            entity_class, key, execution_options={INCLUDE_DELETED: True}
        )

    def __contains__(self, type_id: object) -> bool:
        return type_id in self._types

    def __iter__(self) -> Iterator[str]:
        return iter(self._types)

    def __len__(self) -> int:
        return len(self._types)


def _coerce_identity(entity_class: Type[Any], type_id: str, entity_id: Any) -> Any:
    column = inspect(entity_class).primary_key[0]
    try:
        python_type = column.type.python_type
    except NotImplementedError:
        return entity_id

    if isinstance(entity_id, python_type):
        return entity_id
    try:
        return python_type(entity_id)
    except (TypeError, ValueError) as exc:
        raise IntegrityFault(
            f"Logged id {entity_id!r} is not a valid key for {type_id}",
            entity_type=type_id,
            entity_id=entity_id,
        ) from exc


# Registry used when a coordinator is created without one
default_registry = EntityRegistry()


def register_soft_delete_models(
    base_class: Type[Any],
    registry: Optional[EntityRegistry] = None,
    session_target: FilterTarget = Session,
) -> List[str]:
    """
    Register every soft-deletable model of a declarative base.

    Also installs the before_delete listener refusing plain
    ``session.delete()`` of soft-deletable rows, and the default filter
    hiding deleted rows on every session of ``session_target``.

    Args:
        base_class: The declarative base class
        registry: Registry to populate, defaults to ``default_registry``
        session_target: Session class, sessionmaker or session to install the
            filter on, defaults to every Session

    Returns:
        The registered type ids
    """
    registry = registry if registry is not None else default_registry
    type_ids = []

    for entity_class in soft_deletable_classes(base_class):
        type_ids.append(registry.register(entity_class))
        if not event.contains(entity_class, "before_delete", prevent_hard_delete):
            event.listen(entity_class, "before_delete", prevent_hard_delete)

    enable_soft_delete_filter(session_target)
    return type_ids
