import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import pytest
from erp_billing import create_app
from erp_billing.extensions import db
from erp_billing.models import Plan

from tests.fakes import FakeStripe


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        APP_BASE_URL="http://example.test",
        WTF_CSRF_ENABLED=False,
        STRIPE_WEBHOOK_SECRET="whsec_test_x",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield


@pytest.fixture()
def stripe_fake(app, monkeypatch):
    fake = FakeStripe()
    monkeypatch.setitem(app.extensions, "stripe_client", fake)
    return fake


@pytest.fixture()
def plans(app):
    with app.app_context():
        db.session.add_all([
            Plan(code="basic", name="Basic",
                 stripe_price_monthly_id="price_basic_m", stripe_price_yearly_id="price_basic_y"),
            Plan(code="pro", name="Pro",
                 stripe_price_monthly_id="price_pro_m", stripe_price_yearly_id="price_pro_y", trial_days=30),
            Plan(code="enterprise", name="Enterprise"),
        ])
        db.session.commit()
