"""
Pytest configuration and shared fixtures for AgriLedger tests.
"""
import os
import tempfile

import pytest

from agriledger import create_app
from agriledger.extensions import db
from agriledger.models import Product
from agriledger.services.catalog_service import seed_catalog
from agriledger.services.ledger import create_root

FARMER_ID = 'farmer-1'
DISTRIBUTOR_ID = 'distributor-1'
RETAILER_ID = 'retailer-1'
TRANSPORTER_ID = 'transporter-1'
CONSUMER_ID = 'consumer-1'


@pytest.fixture(scope='function')
def app():
    """Create and configure a new app instance for each test."""
    # A file database so that threads get their own connections and real locks
    db_fd, db_path = tempfile.mkstemp(suffix='.db')

    app = create_app({
        'TESTING': True,
        'DATABASE_URL': f'sqlite:///{db_path}',
        'SECRET_KEY': 'test-secret-key',
        'AUDIT_SINK_URL': None,
        'AUDIT_SINK_MODE': 'inline',
        'LEDGER_LOCK_TIMEOUT_SECONDS': 15.0,
    })

    with app.app_context():
        db.create_all()
        seed_catalog()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()

    os.close(db_fd)
    os.unlink(db_path)


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield app
        db.session.rollback()


@pytest.fixture
def runner(app):
    """A test runner for the app's Click commands."""
    return app.test_cli_runner()


@pytest.fixture
def product(app_ctx):
    item = Product(title='Roma Tomatoes', farmer_id=FARMER_ID, crop_details='Open field, drip irrigated')
    db.session.add(item)
    db.session.commit()
    return item


@pytest.fixture
def harvest(product):
    """Factory: register a harvested root batch owned by the product's farmer."""
    def _harvest(quantity=1000.0, **kwargs):
        return create_root(product.id, FARMER_ID, quantity, **kwargs).batch

    return _harvest
