"""
pytest configuration for the workqueue test suite

Every test gets its own file-backed SQLite database under tmp_path, so
threaded tests open real, independent connections.
"""

import pytest

from workqueue.executor import TaskHandlerRegistry
from workqueue.models import create_db_engine, create_session_factory, init_db
from workqueue.queue import enqueue_task


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite store with the schema created"""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'workqueue.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db_session(session_factory):
    """Create a fresh database session for testing"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def registry():
    return TaskHandlerRegistry()


@pytest.fixture
def make_task(db_session):
    """Enqueue a task with test defaults; keyword arguments override them"""
    def _make(**overrides):
        params = dict(type="index", payload={"doc": 1}, workspace_id="ws-1")
        params.update(overrides)
        return enqueue_task(db_session, **params)
    return _make


def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line("markers", "slow: exercises real sleeps or threads")
