"""
Route test fixtures.

Imports the real Flask app; every test gets a fresh temporary database
through the db_connection fixture.
"""
import pytest


@pytest.fixture
def app(db_connection):
    from app import app as flask_app

    flask_app.config.update(TESTING=True)
    yield flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _reset_factory_counters():
    from tests.factories.db_factories import reset_counters
    reset_counters()
    yield
    reset_counters()
