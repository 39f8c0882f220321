"""Shared fixtures for the transactional soft delete tests."""

import pytest
from sample_models import Base, Part, Supplier, Widget
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from transactional_soft_deletes import (
    EntityRegistry,
    SoftDeleteConfig,
    TransactionCoordinator,
    create_tables,
    register_soft_delete_models,
)


@pytest.fixture
def engine():
    """Create an in-memory SQLite database with every table."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create a session for testing."""
    Session = sessionmaker(bind=engine)
    session = Session()

    yield session

    session.close()


@pytest.fixture
def registry():
    """Registry holding the sample models."""
    registry = EntityRegistry()
    register_soft_delete_models(Base, registry)
    return registry


@pytest.fixture
def config():
    """Default configuration."""
    return SoftDeleteConfig()


@pytest.fixture
def coordinator(db_session, registry, config):
    """Coordinator bound to the test session, acting as user 42."""
    return TransactionCoordinator(
        db_session, registry=registry, user_id_provider=lambda: 42, config=config
    )


@pytest.fixture
def widgets(db_session):
    """Three live widgets with ids 7, 8 and 9."""
    items = [
        Widget(id=7, name="sprocket"),
        Widget(id=8, name="gear"),
        Widget(id=9, name="cog"),
    ]
    db_session.add_all(items)
    db_session.commit()
    return items


@pytest.fixture(autouse=True)
def clear_hooks():
    """Drop restore hooks registered by a test."""
    yield
    for model in (Widget, Part, Supplier):
        model.clear_restore_hooks()
