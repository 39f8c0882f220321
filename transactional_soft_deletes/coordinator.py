"""
Transaction coordinator for transactional soft deletes.

The coordinator is the only writer of delete transactions and deletion log
entries. It assigns transaction identity, logs row deletions inside the same
store transaction as the marker update, records restores, closes transactions
once nothing in them is outstanding and restores whole transactions.

One coordinator is bound to one SQLAlchemy session. The session is the unit of
request scope, so concurrent requests each get their own current transaction.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from sqlalchemy import case, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, SessionTransaction, SessionTransactionOrigin

from .config import UNKNOWN_USER_ID, SoftDeleteConfig, get_config
from .exceptions import (
    CommitFailure,
    IntegrityFault,
    LogWriteFailure,
    NotFoundFailure,
    RestoreTimeout,
    TransactionalSoftDeleteError,
    TransactionOpenFailure,
)
from .mixins import TransactionalSoftDeleteMixin
from .models import OutstandingEntry, RestoreResult, RestoreState, TransactionSummary
from .query import enable_soft_delete_filter
from .registry import EntityRegistry, default_registry
from .tables import DeleteTransaction, DeleteTransactionLog

logger = logging.getLogger(__name__)

SESSION_INFO_KEY = "transactional_soft_deletes.coordinator"

OutcomeCallback = Callable[[Optional[BaseException]], None]


def utcnow() -> datetime:
    """Naive UTC timestamp, as stored in the transaction tables."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class TransactionContext:
    """Current delete transaction and shared timestamp of one request or batch."""

    transaction_id: Optional[int] = None
    timestamp: Optional[datetime] = None

    def snapshot(self) -> Tuple[Optional[int], Optional[datetime]]:
        return self.transaction_id, self.timestamp

    def restore(self, snapshot: Tuple[Optional[int], Optional[datetime]]) -> None:
        self.transaction_id, self.timestamp = snapshot

    def reset(self) -> None:
        self.transaction_id = None
        self.timestamp = None


class TransactionCoordinator:
    """
    Coordinates delete transactions, the deletion log and restores.

    Example:
        >>> coordinator = TransactionCoordinator(session, user_id_provider=lambda: 42)
        >>> widget.delete()
        >>> gadget.delete()  # same delete transaction as widget
        >>> coordinator.restore_transaction(widget.delete_transaction_id)
    """

    def __init__(
        self,
        session: Session,
        registry: Optional[EntityRegistry] = None,
        user_id_provider: Optional[Callable[[], Any]] = None,
        config: Optional[SoftDeleteConfig] = None,
        context: Optional[TransactionContext] = None,
    ):
        """
        Initialize the coordinator and bind it to the session.

        Args:
            session: SQLAlchemy session used for every read and write
            registry: Registry resolving logged type ids, defaults to the
                module level registry
            user_id_provider: Callable returning the acting user id, defaults
                to the configured provider
            config: Configuration, defaults to the global configuration
            context: Current transaction handle, a fresh one by default
        """
        self.session = session
        self.registry = registry if registry is not None else default_registry
        self.config = config or get_config()
        self.user_id_provider = user_id_provider or self.config.user_id_provider
        self.context = context or TransactionContext()

        self._depth = 0
        self._outcome_callbacks: List[OutcomeCallback] = []

        enable_soft_delete_filter(session)
        session.info[SESSION_INFO_KEY] = self

    # ------------------------------------------------------------------
    # Store transactions
    # ------------------------------------------------------------------

    @contextmanager
    def atomic(self, on_outcome: Optional[OutcomeCallback] = None) -> Iterator[Session]:
        """
        Run a block inside one store transaction.

        When the session has no transaction yet, the outermost block begins one
        and commits it on success. When the session is already inside a
        transaction, the block runs in a SAVEPOINT so that a failure discards
        only the block's own writes. An implicitly begun (autobegin)
        transaction is then committed on success; one the caller began with
        ``Session.begin()`` is left for the caller to commit.

        Any exception rolls back, restores the current transaction handle and
        is re-raised, wrapped in :class:`TransactionalSoftDeleteError` when it
        is a raw SQLAlchemy error. Nested blocks join the outer one.

        Args:
            on_outcome: Called after the outermost block finishes, with None
                on commit or the exception on rollback
        """
        if on_outcome is not None:
            self._outcome_callbacks.append(on_outcome)

        if self._depth:
            self._depth += 1
            try:
                yield self.session
            finally:
                self._depth -= 1
            return

        snapshot = self.context.snapshot()
        savepoint: Optional[SessionTransaction] = None
        try:
            if self.session.in_transaction():
                outer = self.session.get_transaction()
                commit_outer = (
                    outer is not None
                    and outer.origin is SessionTransactionOrigin.AUTOBEGIN
                )
                savepoint = self.session.begin_nested()
            else:
                self.session.begin()
                commit_outer = True
        except SQLAlchemyError as exc:
            error = TransactionOpenFailure(str(exc))
            self._finish(error)
            raise error from exc

        released = False
        self._depth = 1
        try:
            yield self.session
            try:
                if savepoint is not None:
                    savepoint.commit()
                    released = True
                if commit_outer:
                    self.session.commit()
            except SQLAlchemyError as exc:
                raise CommitFailure(f"Unable to commit store transaction: {exc}") from exc
        except BaseException as exc:
            self._depth = 0
            if savepoint is not None and not released:
                savepoint.rollback()
            else:
                self.session.rollback()
            self.context.restore(snapshot)

            if isinstance(exc, SQLAlchemyError):
                error = TransactionalSoftDeleteError(f"Store operation failed: {exc}")
                self._finish(error)
                raise error from exc

            self._finish(exc)
            raise

        self._depth = 0
        self._finish(None)

    def _finish(self, error: Optional[BaseException]) -> None:
        callbacks, self._outcome_callbacks = self._outcome_callbacks, []
        for callback in callbacks:
            callback(error)

    @property
    def in_atomic(self) -> bool:
        return self._depth > 0

    # ------------------------------------------------------------------
    # Current transaction and timestamps
    # ------------------------------------------------------------------

    def actor_id(self) -> Any:
        """Return the acting user id, or UNKNOWN_USER_ID without a provider."""
        if self.user_id_provider is None:
            return UNKNOWN_USER_ID
        return self.user_id_provider()

    def current_transaction_id(self) -> int:
        """
        Return the current delete transaction id, opening one if needed.

        The cached id is only reused while its record still exists and is not
        restored. Another session may have closed or purged it meanwhile.
        """
        if self.context.transaction_id is not None:
            record = self.session.get(
                DeleteTransaction,
                self.context.transaction_id,
                populate_existing=True,
            )
            if record is not None and record.restored_at is None:
                return record.id

            logger.debug(
                f"Delete transaction {self.context.transaction_id} was closed "
                "elsewhere, opening a new one"
            )
            self.context.reset()
        return self.new_transaction()

    def new_transaction(self) -> int:
        """
        Open a new delete transaction and make it the current one.

        Returns:
            The new delete transaction id

        Raises:
            LogWriteFailure: If the transaction record could not be written
        """
        timestamp = utcnow()
        actor_id = self.actor_id()
        record = DeleteTransaction(deleted_by_id=actor_id, deleted_at=timestamp)

        with self.atomic():
            self.session.add(record)
            try:
                self.session.flush()
            except SQLAlchemyError as exc:
                raise LogWriteFailure(
                    f"Unable to create delete transaction: {exc}"
                ) from exc

            transaction_id = record.id
            self.context.transaction_id = transaction_id
            self.context.timestamp = timestamp

        logger.info(f"Opened delete transaction {transaction_id} for user {actor_id}")
        return transaction_id

    def shared_timestamp(self) -> datetime:
        """Return the timestamp shared by the current transaction."""
        if self.context.timestamp is None:
            self.context.timestamp = utcnow()
        return self.context.timestamp

    def restore_timestamp(self) -> datetime:
        """Return the timestamp to stamp a restore with."""
        if self.config.freeze_restore_timestamp:
            return self.shared_timestamp()
        return utcnow()

    @contextmanager
    def batch(self) -> Iterator[TransactionContext]:
        """
        Group the deletes of a block into their own delete transaction.

        The previous current transaction is reinstated afterwards.
        """
        previous = self.context
        self.context = TransactionContext()
        try:
            yield self.context
        finally:
            self.context = previous

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def record_deletion(self, entity_type: str, entity_id: Any) -> DeleteTransactionLog:
        """
        Log the deletion of one entity under the current delete transaction.

        Must run inside the store transaction that stamps the entity's marker.

        Raises:
            LogWriteFailure: If the log entry could not be written
        """
        with self.atomic():
            transaction_id = self.current_transaction_id()
            entry = DeleteTransactionLog(
                delete_transaction_id=transaction_id,
                entity_type=entity_type,
                entity_id=str(entity_id),
            )
            self.session.add(entry)
            try:
                self.session.flush()
            except SQLAlchemyError as exc:
                raise LogWriteFailure(
                    f"Unable to log deletion of {entity_type} {entity_id}: {exc}",
                    entity_type=entity_type,
                    entity_id=entity_id,
                    transaction_id=transaction_id,
                ) from exc

        logger.debug(
            f"Logged deletion of {entity_type} {entity_id} "
            f"in transaction {transaction_id}"
        )
        return entry

    def record_restore(
        self, entity_type: str, entity_id: Any, actor_id: Any, timestamp: datetime
    ) -> DeleteTransactionLog:
        """
        Mark the outstanding log entry of an entity as restored.

        Raises:
            NotFoundFailure: If no unrestored entry exists for the entity
            LogWriteFailure: If the entry could not be updated
        """
        with self.atomic():
            try:
                entry = (
                    self.session.query(DeleteTransactionLog)
                    .filter(
                        DeleteTransactionLog.entity_type == entity_type,
                        DeleteTransactionLog.entity_id == str(entity_id),
                        DeleteTransactionLog.restored_at.is_(None),
                    )
                    .order_by(DeleteTransactionLog.id.desc())
                    .first()
                )
            except SQLAlchemyError as exc:
                raise LogWriteFailure(
                    f"Unable to read deletion log of {entity_type} {entity_id}: {exc}",
                    entity_type=entity_type,
                    entity_id=entity_id,
                ) from exc

            if entry is None:
                raise NotFoundFailure(
                    f"No outstanding deletion of {entity_type} {entity_id}",
                    entity_type=entity_type,
                    entity_id=entity_id,
                )

            entry.restored_at = timestamp
            entry.restored_by_id = actor_id
            try:
                self.session.flush()
            except SQLAlchemyError as exc:
                raise LogWriteFailure(
                    f"Unable to mark {entity_type} {entity_id} restored: {exc}",
                    entity_type=entity_type,
                    entity_id=entity_id,
                    transaction_id=entry.delete_transaction_id,
                ) from exc

        return entry

    def close_transaction_if_empty(
        self, transaction_id: int, actor_id: Any, timestamp: datetime
    ) -> bool:
        """
        Mark a delete transaction restored once nothing in it is outstanding.

        A transaction that is already restored is left untouched.

        Returns:
            True if the transaction was closed by this call

        Raises:
            NotFoundFailure: If the transaction does not exist
        """
        with self.atomic():
            record = self.get_transaction(transaction_id)
            if record.restored_at is not None:
                return False
            if self.outstanding_count(transaction_id) > 0:
                return False

            record.restored_at = timestamp
            record.restored_by_id = actor_id
            try:
                self.session.flush()
            except SQLAlchemyError as exc:
                raise LogWriteFailure(
                    f"Unable to close delete transaction {transaction_id}: {exc}",
                    transaction_id=transaction_id,
                ) from exc

            # A closed transaction can never take new deletions
            if self.context.transaction_id == transaction_id:
                self.context.reset()

        logger.info(f"Delete transaction {transaction_id} fully restored")
        return True

    def restore_transaction(self, transaction_id: int) -> RestoreResult:
        """
        Restore every outstanding entity of a delete transaction.

        Entries are restored in log id order through each entity's own
        ``restore()``; the transaction is then stamped restored. Either every
        entry is restored and committed or nothing changes.

        Returns:
            Result in the COMMITTED state

        Raises:
            NotFoundFailure: If the transaction does not exist
            IntegrityFault: If a logged type is unregistered or a logged row
                no longer exists
            RestoreTimeout: If the configured timeout elapsed
            TransactionalSoftDeleteError: If any single restore failed
        """
        result = RestoreResult(transaction_id=transaction_id, state=RestoreState.PENDING)
        self.get_transaction(transaction_id)

        timeout = self.config.bulk_restore_timeout_seconds
        deadline = time.monotonic() + timeout if timeout else None

        try:
            with self.atomic():
                result.state = RestoreState.IN_PROGRESS
                entries = (
                    self.session.query(DeleteTransactionLog)
                    .filter(
                        DeleteTransactionLog.delete_transaction_id == transaction_id,
                        DeleteTransactionLog.restored_at.is_(None),
                    )
                    .order_by(DeleteTransactionLog.id.asc())
                    .all()
                )

                for entry in entries:
                    if deadline is not None and time.monotonic() > deadline:
                        raise RestoreTimeout(transaction_id, timeout or 0)

                    entity = self.registry.load(
                        entry.entity_type, entry.entity_id, self.session
                    )
                    if entity is None:
                        raise IntegrityFault(
                            f"{entry.entity_type} {entry.entity_id} logged under "
                            f"transaction {transaction_id} no longer exists",
                            entity_type=entry.entity_type,
                            entity_id=entry.entity_id,
                            transaction_id=transaction_id,
                        )

                    entity.restore(self)
                    result.restored.append(
                        OutstandingEntry(
                            log_id=entry.id,
                            entity_type=entry.entity_type,
                            entity_id=entry.entity_id,
                        )
                    )

                actor_id = self.actor_id()
                timestamp = self.restore_timestamp()
                record = self.get_transaction(transaction_id)
                if record.restored_at is None:
                    record.restored_at = timestamp
                    record.restored_by_id = actor_id
                    try:
                        self.session.flush()
                    except SQLAlchemyError as exc:
                        raise LogWriteFailure(
                            f"Unable to close delete transaction "
                            f"{transaction_id}: {exc}",
                            transaction_id=transaction_id,
                        ) from exc

                result.restored_at = record.restored_at
                result.restored_by_id = record.restored_by_id
                if self.context.transaction_id == transaction_id:
                    self.context.reset()
        except TransactionalSoftDeleteError as exc:
            result.state = RestoreState.ABORTED
            logger.warning(
                f"Restore of delete transaction {transaction_id} aborted: {exc}"
            )
            raise

        result.state = RestoreState.COMMITTED
        logger.info(
            f"Restored delete transaction {transaction_id} "
            f"({result.restored_count} entries)"
        )
        return result

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_transaction(self, transaction_id: int) -> DeleteTransaction:
        """
        Return a delete transaction record.

        Raises:
            NotFoundFailure: If it does not exist
        """
        record = self.session.get(DeleteTransaction, transaction_id)
        if record is None:
            raise NotFoundFailure(
                f"Delete transaction {transaction_id} not found",
                transaction_id=transaction_id,
            )
        return record

    def _outstanding_query(self, transaction_id: int) -> Any:
        return self.session.query(DeleteTransactionLog).filter(
            DeleteTransactionLog.delete_transaction_id == transaction_id,
            DeleteTransactionLog.restored_at.is_(None),
        )

    def outstanding_count(self, transaction_id: int) -> int:
        """Number of entries of a transaction not yet restored."""
        return self._outstanding_query(transaction_id).count()

    def outstanding_grouped_by_type(self, transaction_id: int) -> Dict[str, int]:
        """Outstanding entries of a transaction counted per entity type."""
        rows = (
            self.session.query(
                DeleteTransactionLog.entity_type, func.count(DeleteTransactionLog.id)
            )
            .filter(
                DeleteTransactionLog.delete_transaction_id == transaction_id,
                DeleteTransactionLog.restored_at.is_(None),
            )
            .group_by(DeleteTransactionLog.entity_type)
            .order_by(DeleteTransactionLog.entity_type)
            .all()
        )
        return {entity_type: count for entity_type, count in rows}

    def outstanding_items(
        self, transaction_id: int, hydrate: bool = False
    ) -> Union[List[OutstandingEntry], List[TransactionalSoftDeleteMixin]]:
        """
        List what a transaction still has outstanding.

        Args:
            transaction_id: Delete transaction to inspect
            hydrate: Load the deleted entities instead of returning ids

        Returns:
            Outstanding entries in log id order, or the deleted entities

        Raises:
            IntegrityFault: If hydrating hits an unregistered type or a logged
                row that no longer exists, as a bulk restore would
        """
        entries = (
            self._outstanding_query(transaction_id)
            .order_by(DeleteTransactionLog.id.asc())
            .all()
        )

        if not hydrate:
            return [
                OutstandingEntry(
                    log_id=entry.id,
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                )
                for entry in entries
            ]

        entities: List[TransactionalSoftDeleteMixin] = []
        for entry in entries:
            entity = self.registry.load(entry.entity_type, entry.entity_id, self.session)
            if entity is None:
                raise IntegrityFault(
                    f"{entry.entity_type} {entry.entity_id} logged under "
                    f"transaction {transaction_id} no longer exists",
                    entity_type=entry.entity_type,
                    entity_id=entry.entity_id,
                    transaction_id=transaction_id,
                )
            entities.append(entity)
        return entities

    def summarize(self, transaction_id: int) -> TransactionSummary:
        """Return a summary of one delete transaction."""
        record = self.get_transaction(transaction_id)
        total = (
            self.session.query(DeleteTransactionLog)
            .filter(DeleteTransactionLog.delete_transaction_id == transaction_id)
            .count()
        )
        by_type = self.outstanding_grouped_by_type(transaction_id)

        return TransactionSummary(
            id=record.id,
            deleted_by_id=record.deleted_by_id,
            deleted_at=record.deleted_at,
            restored_at=record.restored_at,
            restored_by_id=record.restored_by_id,
            total=total,
            outstanding=sum(by_type.values()),
            by_type=by_type,
        )

    def list_transactions(
        self, open_only: bool = False, limit: Optional[int] = None
    ) -> List[TransactionSummary]:
        """
        List delete transactions, newest first.

        Args:
            open_only: Only transactions not yet fully restored
            limit: Maximum number of transactions to return
        """
        query = self.session.query(DeleteTransaction)
        if open_only:
            query = query.filter(DeleteTransaction.restored_at.is_(None))
        query = query.order_by(DeleteTransaction.id.desc())
        if limit is not None:
            query = query.limit(limit)
        records = query.all()

        ids = [record.id for record in records]
        totals: Dict[int, Tuple[int, int]] = {}
        if ids:
            rows = (
                self.session.query(
                    DeleteTransactionLog.delete_transaction_id,
                    func.count(DeleteTransactionLog.id),
                    func.sum(
                        case((DeleteTransactionLog.restored_at.is_(None), 1), else_=0)
                    ),
                )
                .filter(DeleteTransactionLog.delete_transaction_id.in_(ids))
                .group_by(DeleteTransactionLog.delete_transaction_id)
                .all()
            )
            totals = {row[0]: (row[1], row[2]) for row in rows}

        return [
            TransactionSummary(
                id=record.id,
                deleted_by_id=record.deleted_by_id,
                deleted_at=record.deleted_at,
                restored_at=record.restored_at,
                restored_by_id=record.restored_by_id,
                total=totals.get(record.id, (0, 0))[0],
                outstanding=totals.get(record.id, (0, 0))[1],
            )
            for record in records
        ]

    def truncate(self) -> None:
        """
        Purge every delete transaction and log entry.

        Markers on entities are left as they are; rows still marked deleted can
        then no longer be restored through the log.
        """
        with self.atomic():
            logs = self.session.query(DeleteTransactionLog).delete(
                synchronize_session=False
            )
            transactions = self.session.query(DeleteTransaction).delete(
                synchronize_session=False
            )
            self.context.reset()

        logger.warning(
            f"Purged {transactions} delete transactions and {logs} log entries"
        )


def get_coordinator(session: Session, **kwargs: Any) -> TransactionCoordinator:
    """
    Return the coordinator bound to a session, creating one if needed.

    Args:
        session: SQLAlchemy session
        **kwargs: Passed to TransactionCoordinator when one is created
    """
    coordinator = session.info.get(SESSION_INFO_KEY)
    if coordinator is None:
        coordinator = TransactionCoordinator(session, **kwargs)
    return coordinator
