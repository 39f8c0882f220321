"""
SQLAlchemy models for delete transactions and their deletion log.

A ``DeleteTransaction`` row records who deleted a batch of rows and when, and
later who restored it. Each ``DeleteTransactionLog`` row identifies one deleted
entity so the whole batch can be recovered.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from .config import get_config

Base = declarative_base()

_config = get_config()


class DeleteTransaction(Base):  # type: ignore[valid-type,misc]
    """One logical batch of deletions."""

    __tablename__ = _config.transaction_table

    id: Mapped[int] = mapped_column(_config.column_id, Integer, primary_key=True)
    deleted_by_id: Mapped[int] = mapped_column(
        _config.column_deleted_by_id, Integer, nullable=False
    )
    deleted_at: Mapped[datetime] = mapped_column(
        _config.column_deleted_at, DateTime, nullable=False
    )
    restored_at: Mapped[Optional[datetime]] = mapped_column(
        _config.column_restored_at, DateTime, nullable=True
    )
    restored_by_id: Mapped[Optional[int]] = mapped_column(
        _config.column_restored_by_id, Integer, nullable=True
    )

    @property
    def is_restored(self) -> bool:
        return self.restored_at is not None

    def __repr__(self) -> str:
        return (
            f"<DeleteTransaction id={self.id} deleted_by_id={self.deleted_by_id} "
            f"restored_at={self.restored_at}>"
        )


class DeleteTransactionLog(Base):  # type: ignore[valid-type,misc]
    """One deleted entity within a delete transaction."""

    __tablename__ = _config.log_table
    __table_args__ = (
        Index(
            f"ix_{_config.log_table}_outstanding",
            _config.column_delete_transaction_id,
            _config.column_restored_at,
        ),
        Index(
            f"ix_{_config.log_table}_entity",
            _config.column_entity_type,
            _config.column_entity_id,
        ),
    )

    id: Mapped[int] = mapped_column(_config.column_id, Integer, primary_key=True)
    delete_transaction_id: Mapped[int] = mapped_column(
        _config.column_delete_transaction_id, Integer, nullable=False
    )
    entity_type: Mapped[str] = mapped_column(
        _config.column_entity_type, String(255), nullable=False
    )
    entity_id: Mapped[str] = mapped_column(
        _config.column_entity_id, String(100), nullable=False
    )
    restored_at: Mapped[Optional[datetime]] = mapped_column(
        _config.column_restored_at, DateTime, nullable=True
    )
    restored_by_id: Mapped[Optional[int]] = mapped_column(
        _config.column_restored_by_id, Integer, nullable=True
    )

    @property
    def is_restored(self) -> bool:
        return self.restored_at is not None

    def __repr__(self) -> str:
        return (
            f"<DeleteTransactionLog id={self.id} "
            f"transaction={self.delete_transaction_id} "
            f"{self.entity_type}#{self.entity_id}>"
        )


def create_tables(engine: Engine) -> None:
    """Create the delete transaction tables if they do not exist."""
    Base.metadata.create_all(engine)


def drop_tables(engine: Engine) -> None:
    """Drop the delete transaction tables."""
    Base.metadata.drop_all(engine)
