#!/usr/bin/env python3
"""
Transactional Soft Delete Example

This is a demonstration file prioritizing readability over production
readiness. It uses an in-memory database and a hard-coded acting user.

Demonstrates:
- Grouping a burst of deletes into one delete transaction
- Hiding deleted rows from queries
- Restoring a single row
- Restoring a whole delete transaction, all or nothing
"""

from sqlalchemy import Column, ForeignKey, Integer, String, create_engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from transactional_soft_deletes import (
    TransactionalSoftDeleteMixin,
    TransactionCoordinator,
    VetoFailure,
    create_tables,
    register_soft_delete_models,
)

Base = declarative_base()


class Project(Base, TransactionalSoftDeleteMixin):
    """Project owning a set of tasks."""

    __tablename__ = "projects"
    __soft_delete_type__ = "Project"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)

    tasks = relationship("Task", back_populates="project")


class Task(Base, TransactionalSoftDeleteMixin):
    """Task belonging to a project."""

    __tablename__ = "tasks"
    __soft_delete_type__ = "Task"

    id = Column(Integer, primary_key=True)
    project_id = Column(Integer, ForeignKey("projects.id"))
    title = Column(String, nullable=False)
    locked = Column(Integer, default=0)

    project = relationship("Project", back_populates="tasks")


def demonstrate_soft_delete() -> None:
    """Show transactional soft delete functionality."""
    print("🗑️  Transactional Soft Delete Example\n")

    # Setup database
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    create_tables(engine)
    register_soft_delete_models(Base)

    Session = sessionmaker(bind=engine)
    session = Session()
    coordinator = TransactionCoordinator(session, user_id_provider=lambda: 1001)

    # 1. Create test data
    print("1️⃣ Creating Test Data:")

    project = Project(id=1, name="Website relaunch")
    tasks = [
        Task(id=1, project_id=1, title="Draft copy"),
        Task(id=2, project_id=1, title="Pick fonts"),
        Task(id=3, project_id=1, title="Ship it", locked=1),
    ]
    session.add(project)
    session.add_all(tasks)
    session.commit()

    print(f"  ✓ Created project: {project.name}")
    print(f"  ✓ Created {len(Task.query(session).all())} tasks\n")

    # 2. Delete a burst of rows
    print("2️⃣ Deleting a Project and its Tasks:")

    project.delete()
    for task in tasks:
        task.delete()

    transaction_id = project.delete_transaction_id
    summary = coordinator.summarize(transaction_id)

    print(f"  ✓ Delete transaction {transaction_id} by user {summary.deleted_by_id}")
    print(f"  Outstanding entries: {summary.outstanding} {summary.by_type}")
    print(f"  Visible tasks: {len(Task.query(session).all())}")
    print(f"  Deleted tasks: {len(Task.query_only_deleted(session).all())}\n")

    # 3. Restore a single row
    print("3️⃣ Restoring a Single Task:")

    tasks[0].restore()

    print(f"  ✓ Restored task: {tasks[0].title}")
    print(f"  Outstanding entries: {coordinator.outstanding_count(transaction_id)}\n")

    # 4. A vetoed bulk restore changes nothing
    print("4️⃣ Vetoed Bulk Restore:")

    Task.on_restoring(lambda task: not task.locked)
    try:
        coordinator.restore_transaction(transaction_id)
    except VetoFailure as e:
        print(f"  ✗ Restore aborted: {e}")
    print(f"  Outstanding entries: {coordinator.outstanding_count(transaction_id)}\n")

    # 5. Bulk restore
    print("5️⃣ Restoring the Whole Transaction:")

    Task.clear_restore_hooks()
    result = coordinator.restore_transaction(transaction_id)

    print(f"  ✓ Restored {result.restored_count} entries")
    for entry in result.restored:
        print(f"    - {entry.entity_type} {entry.entity_id}")
    record = coordinator.get_transaction(transaction_id)
    print(f"  Transaction restored at: {record.restored_at}")

    print("\n✅ Transactional soft delete example completed!")

    session.close()


if __name__ == "__main__":
    demonstrate_soft_delete()
