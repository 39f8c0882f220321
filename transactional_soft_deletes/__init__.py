"""
Transactional Soft Deletes - bulk-recoverable soft deletion for SQLAlchemy.

Deleting one or many rows is grouped into a named *delete transaction*. Every
deleted row is logged individually, and a single row or a whole transaction can
later be restored.

Key Features
------------
* **Delete transactions**: a burst of deletes shares one transaction id,
  actor and timestamp
* **Row-level log**: each deleted row is logged in the same store transaction
  that marks it deleted
* **Restore**: single rows or whole transactions, all or nothing
* **Query filtering**: deleted rows are hidden unless asked for

Quick Start
-----------
>>> from transactional_soft_deletes import (
...     TransactionCoordinator, TransactionalSoftDeleteMixin,
...     create_tables, register_soft_delete_models,
... )
>>>
>>> class Widget(Base, TransactionalSoftDeleteMixin):
...     __tablename__ = "widgets"
...     id = Column(Integer, primary_key=True)
>>>
>>> create_tables(engine)
>>> register_soft_delete_models(Base)
>>> coordinator = TransactionCoordinator(session, user_id_provider=lambda: 42)
>>> widget.delete()
>>> coordinator.restore_transaction(widget.delete_transaction_id)

License
-------
MIT License - See LICENSE file for details.
"""

__version__ = "1.0.0"

from .config import (
    UNKNOWN_USER_ID,
    SoftDeleteConfig,
    configure,
    get_config,
    set_config,
)
from .coordinator import TransactionContext, TransactionCoordinator, get_coordinator
from .exceptions import (
    AlreadyDeletedException,
    CommitFailure,
    IntegrityFault,
    LogWriteFailure,
    MarkerWriteFailure,
    NotFoundFailure,
    RestoreTimeout,
    TransactionalSoftDeleteError,
    TransactionOpenFailure,
    VetoFailure,
)
from .mixins import TransactionalSoftDeleteMixin
from .models import OutstandingEntry, RestoreResult, RestoreState, TransactionSummary
from .query import (
    INCLUDE_DELETED,
    TransactionalQuery,
    disable_soft_delete_filter,
    enable_soft_delete_filter,
)
from .registry import EntityRegistry, default_registry, register_soft_delete_models
from .tables import DeleteTransaction, DeleteTransactionLog, create_tables, drop_tables

__all__ = [
    # Coordinator
    "TransactionCoordinator",
    "TransactionContext",
    "get_coordinator",
    # Entities
    "TransactionalSoftDeleteMixin",
    "EntityRegistry",
    "default_registry",
    "register_soft_delete_models",
    # Queries
    "TransactionalQuery",
    "INCLUDE_DELETED",
    "enable_soft_delete_filter",
    "disable_soft_delete_filter",
    # Tables
    "DeleteTransaction",
    "DeleteTransactionLog",
    "create_tables",
    "drop_tables",
    # Models
    "OutstandingEntry",
    "RestoreResult",
    "RestoreState",
    "TransactionSummary",
    # Configuration
    "SoftDeleteConfig",
    "UNKNOWN_USER_ID",
    "configure",
    "get_config",
    "set_config",
    # Exceptions
    "TransactionalSoftDeleteError",
    "TransactionOpenFailure",
    "LogWriteFailure",
    "MarkerWriteFailure",
    "IntegrityFault",
    "NotFoundFailure",
    "VetoFailure",
    "AlreadyDeletedException",
    "CommitFailure",
    "RestoreTimeout",
]
