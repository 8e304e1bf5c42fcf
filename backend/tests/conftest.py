"""
Pytest fixtures for PharmaStock backend tests.

Provides an in-memory application, a per-test table wipe, product/lot
factories and the test client.
"""

import itertools
from datetime import timedelta

import pytest
from pharmastock import create_app
from pharmastock.extensions import db
from pharmastock.services import catalog_service, lot_service
from pharmastock.time_utils import today


ACTOR = "pharmacist-1"


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SCAN_SESSION_SWEEPER_ENABLED': False,
        'ENABLE_DEMO_ENDPOINTS': True,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def actor_headers():
    return {'X-Actor-Id': ACTOR}


_barcodes = itertools.count(7891000000001)
_lot_numbers = itertools.count(1)


@pytest.fixture(scope='function')
def make_product(db_session):
    """Factory: create an active product with a unique barcode."""
    def _make(name="Amoxicillin 500mg", barcode=None, **kwargs):
        return catalog_service.create_product(
            name=name,
            barcode=barcode or str(next(_barcodes)),
            **kwargs,
        )
    return _make


@pytest.fixture(scope='function')
def product(make_product):
    return make_product()


@pytest.fixture(scope='function')
def make_lot(db_session):
    """
    Factory: receive a lot through the lot store (writes the ENTRY movement).

    Dates are relative to today so tests do not age: expires_in and
    manufactured_ago are in days.
    """
    def _make(product, quantity=10, expires_in=365, manufactured_ago=30, lot_number=None, **extra):
        patch = {
            'product_id': product.id,
            'lot_number': lot_number or f"L{next(_lot_numbers):05d}",
            'initial_quantity': quantity,
            'manufacture_date': today() - timedelta(days=manufactured_ago),
            'expiration_date': today() + timedelta(days=expires_in),
        }
        patch.update(extra)
        return lot_service.create_lot(patch=patch, actor=ACTOR)
    return _make

