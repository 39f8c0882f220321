"""
Tests for the transaction coordinator.

Covers transaction identity, the deletion log, closing transactions and the
all-or-nothing bulk restore.
"""

from datetime import datetime, timedelta
from unittest.mock import patch

import pytest
from sample_models import Base, Part, Supplier, Widget
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from transactional_soft_deletes import (
    INCLUDE_DELETED,
    UNKNOWN_USER_ID,
    DeleteTransaction,
    DeleteTransactionLog,
    EntityRegistry,
    IntegrityFault,
    NotFoundFailure,
    RestoreState,
    RestoreTimeout,
    SoftDeleteConfig,
    TransactionCoordinator,
    VetoFailure,
    create_tables,
    get_coordinator,
)

T0 = datetime(2024, 3, 1, 9, 0, 0)


@pytest.fixture
def file_engine(tmp_path):
    """SQLite file database, so that every session gets its own connection."""
    engine = create_engine(f"sqlite:///{tmp_path / 'shared.db'}")
    Base.metadata.create_all(engine)
    create_tables(engine)
    yield engine
    engine.dispose()


def log_entries(session):
    return (
        session.query(DeleteTransactionLog).order_by(DeleteTransactionLog.id).all()
    )


def snapshot(session):
    """Every row the coordinator or the entities could have touched."""
    widgets = [
        (w.id, w.name, w.delete_transaction_id)
        for w in Widget.query_with_deleted(session).order_by(Widget.id)
    ]
    logs = [
        (e.id, e.delete_transaction_id, e.entity_type, e.entity_id,
         e.restored_at, e.restored_by_id)
        for e in log_entries(session)
    ]
    transactions = [
        (t.id, t.deleted_by_id, t.deleted_at, t.restored_at, t.restored_by_id)
        for t in session.query(DeleteTransaction).order_by(DeleteTransaction.id)
    ]
    return widgets, logs, transactions


class TestTransactionIdentity:
    """Test creation and reuse of delete transactions."""

    def test_first_delete_opens_transaction(self, db_session, coordinator, widgets):
        """Deleting with no active transaction creates one."""
        widget = widgets[0]
        widget.delete()

        record = db_session.query(DeleteTransaction).one()
        assert record.id == 1
        assert record.deleted_by_id == 42
        assert record.restored_at is None
        assert widget.delete_transaction_id == 1

        entry = db_session.query(DeleteTransactionLog).one()
        assert entry.delete_transaction_id == 1
        assert entry.entity_type == "Widget"
        assert entry.entity_id == "7"
        assert entry.restored_at is None

    def test_sentinel_user_without_provider(self, db_session, registry, widgets):
        """Without a user provider the sentinel actor id is recorded."""
        coordinator = TransactionCoordinator(
            db_session, registry=registry, config=SoftDeleteConfig()
        )
        assert coordinator.actor_id() == UNKNOWN_USER_ID == -1

        widgets[0].delete(coordinator)

        assert db_session.query(DeleteTransaction).one().deleted_by_id == -1

    def test_burst_of_deletes_shares_transaction(
        self, db_session, coordinator, widgets
    ):
        """Deletes in one logical batch reuse the cached transaction."""
        widgets[0].delete()
        widgets[1].delete()

        assert db_session.query(DeleteTransaction).count() == 1
        assert [e.delete_transaction_id for e in log_entries(db_session)] == [1, 1]
        assert [e.entity_id for e in log_entries(db_session)] == ["7", "8"]

    def test_new_transaction_replaces_current(self, db_session, coordinator, widgets):
        """An explicit new transaction starts a fresh batch."""
        widgets[0].delete()
        new_id = coordinator.new_transaction()
        widgets[1].delete()

        assert new_id == 2
        assert coordinator.current_transaction_id() == 2
        assert widgets[1].delete_transaction_id == 2
        assert db_session.query(DeleteTransaction).count() == 2

    def test_new_transaction_is_committed(self, db_session, coordinator):
        """Opening a transaction outside a delete commits it immediately."""
        transaction_id = coordinator.new_transaction()

        assert not db_session.in_transaction()
        assert coordinator.get_transaction(transaction_id).deleted_by_id == 42

    def test_shared_timestamp(self, coordinator):
        """The shared timestamp is minted once and reused."""
        with patch(
            "transactional_soft_deletes.coordinator.utcnow", side_effect=[T0, T0]
        ):
            first = coordinator.shared_timestamp()
            second = coordinator.shared_timestamp()

        assert first == second == T0

    def test_transaction_timestamp_is_shared(self, db_session, coordinator, widgets):
        """The transaction's deleted_at becomes the shared timestamp."""
        with patch("transactional_soft_deletes.coordinator.utcnow", return_value=T0):
            widgets[0].delete()

        assert coordinator.shared_timestamp() == T0
        assert db_session.query(DeleteTransaction).one().deleted_at == T0

    def test_batch_groups_deletes(self, db_session, coordinator, widgets):
        """Deletes inside a batch get their own transaction."""
        widgets[0].delete()

        with coordinator.batch() as context:
            widgets[1].delete()
            widgets[2].delete()
            assert context.transaction_id == 2

        assert coordinator.current_transaction_id() == 1
        assert [w.delete_transaction_id for w in widgets] == [1, 2, 2]

    def test_get_coordinator_returns_bound(self, db_session, coordinator):
        """The coordinator bound to a session is reused."""
        assert get_coordinator(db_session) is coordinator

    def test_get_coordinator_creates(self, engine):
        """A session without a coordinator gets one."""
        from sqlalchemy.orm import Session

        with Session(engine) as session:
            created = get_coordinator(session)
            assert isinstance(created, TransactionCoordinator)
            assert get_coordinator(session) is created


class TestRecordRestore:
    """Test per-entry restore bookkeeping."""

    def test_record_restore_marks_entry(self, db_session, coordinator, widgets):
        """The outstanding entry gets the restore stamp."""
        widgets[0].delete()

        entry = coordinator.record_restore("Widget", 7, 5, T0)
        db_session.commit()

        assert entry.restored_at == T0
        assert entry.restored_by_id == 5

    def test_record_restore_not_found(self, coordinator, widgets):
        """Restoring something never deleted fails."""
        with pytest.raises(NotFoundFailure) as exc:
            coordinator.record_restore("Widget", 7, 5, T0)

        assert exc.value.entity_type == "Widget"

    def test_record_restore_not_idempotent(self, coordinator, widgets):
        """A restored entry cannot be restored again."""
        widgets[0].delete()
        widgets[0].restore()

        with pytest.raises(NotFoundFailure):
            coordinator.record_restore("Widget", 7, 5, T0)


class TestCloseTransaction:
    """Test closing a transaction once it is empty."""

    def test_open_while_entries_outstanding(self, db_session, coordinator, widgets):
        """Restoring one of two rows leaves the transaction open."""
        widgets[0].delete()
        widgets[1].delete()

        widgets[0].restore()

        assert widgets[0].delete_transaction_id is None
        assert coordinator.outstanding_count(1) == 1
        assert coordinator.get_transaction(1).restored_at is None

    def test_closed_when_last_entry_restored(self, db_session, coordinator, widgets):
        """Restoring the last row closes the transaction."""
        widgets[0].delete()
        widgets[1].delete()

        widgets[0].restore()
        widgets[1].restore()

        record = coordinator.get_transaction(1)
        assert coordinator.outstanding_count(1) == 0
        assert record.restored_at is not None
        assert record.restored_by_id == 42

    def test_close_is_idempotent(self, db_session, coordinator, widgets):
        """Closing an already closed transaction changes nothing."""
        widgets[0].delete()
        widgets[0].restore()
        record = coordinator.get_transaction(1)
        restored_at = record.restored_at

        closed = coordinator.close_transaction_if_empty(
            1, 99, restored_at + timedelta(days=1)
        )

        assert closed is False
        record = coordinator.get_transaction(1)
        assert record.restored_at == restored_at
        assert record.restored_by_id == 42

    def test_close_refuses_with_outstanding(self, coordinator, widgets):
        """A transaction with outstanding entries stays open."""
        widgets[0].delete()

        assert coordinator.close_transaction_if_empty(1, 42, T0) is False
        assert coordinator.get_transaction(1).restored_at is None

    def test_close_unknown_transaction(self, coordinator):
        """Closing a transaction that does not exist fails."""
        with pytest.raises(NotFoundFailure):
            coordinator.close_transaction_if_empty(404, 42, T0)

    def test_closed_transaction_is_not_reused(self, db_session, coordinator, widgets):
        """Deletes after a transaction closed open a new one."""
        widgets[0].delete()
        widgets[0].restore()

        widgets[0].delete()

        assert widgets[0].delete_transaction_id == 2
        assert coordinator.get_transaction(1).restored_at is not None

    def test_transaction_closed_by_another_session(
        self, file_engine, registry, config
    ):
        """A cached transaction closed through another session is not reused."""
        with Session(file_engine) as setup:
            setup.add_all([Widget(id=7, name="sprocket"), Widget(id=8, name="gear")])
            setup.commit()

        with Session(file_engine) as first, Session(file_engine) as second:
            deleter = TransactionCoordinator(
                first, registry=registry, user_id_provider=lambda: 1, config=config
            )
            restorer = TransactionCoordinator(
                second, registry=registry, user_id_provider=lambda: 2, config=config
            )

            first.get(Widget, 7).delete()
            assert deleter.context.transaction_id == 1

            second.get(Widget, 7, execution_options={INCLUDE_DELETED: True}).restore()
            assert restorer.get_transaction(1).restored_at is not None

            widget = first.get(Widget, 8)
            widget.delete()

            assert widget.delete_transaction_id == 2
            assert deleter.context.transaction_id == 2
            assert deleter.outstanding_count(1) == 0
            assert deleter.get_transaction(1).restored_at is not None
            assert deleter.outstanding_count(2) == 1


class TestRestoreTimestamps:
    """Test the frozen and fresh restore timestamp modes."""

    def test_frozen_timestamps_reuse_shared(self, db_session, coordinator, widgets):
        """By default every restore reuses the shared timestamp."""
        with patch("transactional_soft_deletes.coordinator.utcnow", return_value=T0):
            widgets[0].delete()
            widgets[1].delete()
            widgets[0].restore()
            widgets[1].restore()

        assert [e.restored_at for e in log_entries(db_session)] == [T0, T0]
        assert coordinator.get_transaction(1).restored_at == T0

    def test_fresh_timestamps(self, db_session, registry, widgets):
        """With freezing off each restore mints its own timestamp."""
        coordinator = TransactionCoordinator(
            db_session,
            registry=registry,
            user_id_provider=lambda: 42,
            config=SoftDeleteConfig(freeze_restore_timestamp=False),
        )
        t1 = T0 + timedelta(minutes=1)
        t2 = T0 + timedelta(minutes=2)

        with patch(
            "transactional_soft_deletes.coordinator.utcnow", side_effect=[T0, t1, t2]
        ):
            widgets[0].delete()
            widgets[1].delete()
            widgets[0].restore()
            widgets[1].restore()

        assert [e.restored_at for e in log_entries(db_session)] == [t1, t2]
        record = coordinator.get_transaction(1)
        assert record.deleted_at == T0
        assert record.restored_at == t2


class TestRestoreTransaction:
    """Test the bulk restore of a whole delete transaction."""

    @pytest.mark.scenario
    def test_delete_restore_scenario(self, db_session, coordinator, widgets):
        """Individual restores close transaction 1, bulk restore closes 2."""
        seven, eight = widgets[0], widgets[1]

        seven.delete()
        eight.delete()
        assert db_session.query(DeleteTransaction).count() == 1

        seven.restore()
        assert coordinator.outstanding_count(1) == 1
        assert coordinator.get_transaction(1).restored_at is None

        eight.restore()
        assert coordinator.get_transaction(1).restored_at is not None

        seven.delete()
        eight.delete()
        assert seven.delete_transaction_id == eight.delete_transaction_id == 2

        result = coordinator.restore_transaction(2)

        assert result.state == RestoreState.COMMITTED
        assert result.restored_count == 2
        assert seven.delete_transaction_id is None
        assert eight.delete_transaction_id is None
        assert coordinator.outstanding_count(2) == 0
        record = coordinator.get_transaction(2)
        assert record.restored_at is not None
        assert record.restored_by_id == 42
        assert result.restored_at == record.restored_at

    def test_restore_in_log_order(self, db_session, coordinator, widgets):
        """Entries are restored in ascending log id order."""
        order = []
        Widget.on_restored(lambda widget, error: order.append(widget.id))

        widgets[2].delete()
        widgets[0].delete()
        widgets[1].delete()

        result = coordinator.restore_transaction(1)

        assert [entry.entity_id for entry in result.restored] == ["9", "7", "8"]
        assert [entry.log_id for entry in result.restored] == [1, 2, 3]
        assert order == [9, 7, 8]

    def test_restore_mixed_types(self, db_session, coordinator, widgets):
        """Entities of several types in one transaction are all restored."""
        part = Part(id=1, label="bolt", widget_id=7)
        supplier = Supplier(code="ACME", name="Acme")
        db_session.add_all([part, supplier])
        db_session.commit()

        widgets[0].delete()
        part.delete()
        supplier.delete()

        assert coordinator.outstanding_grouped_by_type(1) == {
            "Supplier": 1,
            "Widget": 1,
            "sample_models.Part": 1,
        }

        coordinator.restore_transaction(1)

        assert not widgets[0].is_deleted
        assert not part.is_deleted
        assert not supplier.is_deleted

    def test_restore_unknown_transaction(self, coordinator):
        """Restoring a transaction that does not exist fails."""
        with pytest.raises(NotFoundFailure):
            coordinator.restore_transaction(404)

    def test_restore_closed_transaction_is_noop(self, db_session, coordinator, widgets):
        """A fully restored transaction restores nothing and stays as is."""
        widgets[0].delete()
        widgets[0].restore()
        restored_at = coordinator.get_transaction(1).restored_at

        result = coordinator.restore_transaction(1)

        assert result.state == RestoreState.COMMITTED
        assert result.restored == []
        assert coordinator.get_transaction(1).restored_at == restored_at

    def test_veto_aborts_everything(self, db_session, coordinator, widgets):
        """One vetoed restore leaves the whole transaction untouched."""
        for widget in widgets:
            widget.delete()
        before = snapshot(db_session)

        Widget.on_restoring(lambda widget: widget.id != 9)

        with pytest.raises(VetoFailure):
            coordinator.restore_transaction(1)

        assert snapshot(db_session) == before
        assert coordinator.outstanding_count(1) == 3
        assert coordinator.get_transaction(1).restored_at is None

    def test_abort_notifies_restored_hooks(self, db_session, coordinator, widgets):
        """Rows restored before the abort hear about the rollback."""
        for widget in widgets:
            widget.delete()

        calls = []
        Widget.on_restoring(lambda widget: widget.id != 9)
        Widget.on_restored(lambda widget, error: calls.append((widget.id, error)))

        with pytest.raises(VetoFailure):
            coordinator.restore_transaction(1)

        assert [widget_id for widget_id, _ in calls] == [7, 8]
        assert all(isinstance(error, VetoFailure) for _, error in calls)

    def test_unregistered_type_is_integrity_fault(self, db_session, widgets):
        """A logged type missing from the registry aborts the restore."""
        registry = EntityRegistry()
        registry.register(Widget)
        coordinator = TransactionCoordinator(
            db_session, registry=registry, config=SoftDeleteConfig()
        )
        part = Part(id=1, label="bolt")
        db_session.add(part)
        db_session.commit()

        widgets[0].delete()
        part.delete()
        before = snapshot(db_session)

        with pytest.raises(IntegrityFault) as exc:
            coordinator.restore_transaction(1)

        assert exc.value.entity_type == "sample_models.Part"
        assert snapshot(db_session) == before
        assert part.is_deleted

    def test_missing_row_is_integrity_fault(self, db_session, coordinator, widgets):
        """A logged row that no longer exists aborts the restore."""
        widgets[0].delete()
        widgets[1].delete()
        widgets[1].force_delete()

        with pytest.raises(IntegrityFault):
            coordinator.restore_transaction(1)

        assert widgets[0].is_deleted
        assert coordinator.outstanding_count(1) == 2

    def test_timeout_aborts(self, db_session, registry, widgets):
        """A restore running past the timeout is rolled back."""
        coordinator = TransactionCoordinator(
            db_session,
            registry=registry,
            config=SoftDeleteConfig(bulk_restore_timeout_seconds=1),
        )
        for widget in widgets:
            widget.delete()

        with patch("transactional_soft_deletes.coordinator.time") as mock_time:
            mock_time.monotonic.side_effect = [0.0, 0.5, 5.0]
            with pytest.raises(RestoreTimeout):
                coordinator.restore_transaction(1)

        assert coordinator.outstanding_count(1) == 3
        assert all(widget.is_deleted for widget in widgets)


class TestReporting:
    """Test the read-only reporting operations."""

    def test_outstanding_items(self, db_session, coordinator, widgets):
        """Outstanding items list ids in log order."""
        widgets[1].delete()
        widgets[0].delete()
        widgets[1].restore()

        items = coordinator.outstanding_items(1)

        assert [(item.entity_type, item.entity_id) for item in items] == [
            ("Widget", "7")
        ]

    def test_outstanding_items_hydrated(self, db_session, coordinator, widgets):
        """Hydrated items are the deleted entities themselves."""
        widgets[0].delete()
        widgets[1].delete()
        db_session.expunge_all()

        entities = coordinator.outstanding_items(1, hydrate=True)

        assert [entity.id for entity in entities] == [7, 8]
        assert all(entity.is_deleted for entity in entities)

    def test_outstanding_items_hydrated_missing_row(self, coordinator, widgets):
        """Hydrating a logged row that no longer exists fails like a restore."""
        widgets[0].delete()
        widgets[1].delete()
        widgets[1].force_delete()

        with pytest.raises(IntegrityFault) as exc:
            coordinator.outstanding_items(1, hydrate=True)

        assert exc.value.entity_id == "8"
        assert exc.value.transaction_id == 1

    def test_summarize(self, coordinator, widgets):
        """A summary counts total and outstanding entries."""
        widgets[0].delete()
        widgets[1].delete()
        widgets[0].restore()

        summary = coordinator.summarize(1)

        assert summary.total == 2
        assert summary.outstanding == 1
        assert summary.by_type == {"Widget": 1}
        assert summary.deleted_by_id == 42
        assert not summary.is_restored

    def test_list_transactions(self, coordinator, widgets):
        """Transactions are listed newest first, optionally open only."""
        widgets[0].delete()
        widgets[0].restore()
        widgets[1].delete()

        summaries = coordinator.list_transactions()
        assert [s.id for s in summaries] == [2, 1]
        assert [(s.total, s.outstanding) for s in summaries] == [(1, 1), (1, 0)]

        open_only = coordinator.list_transactions(open_only=True)
        assert [s.id for s in open_only] == [2]

    def test_truncate(self, db_session, coordinator, widgets):
        """Truncating purges both log tables and the current transaction."""
        widgets[0].delete()

        coordinator.truncate()

        assert db_session.query(DeleteTransaction).count() == 0
        assert db_session.query(DeleteTransactionLog).count() == 0
        assert coordinator.context.transaction_id is None
