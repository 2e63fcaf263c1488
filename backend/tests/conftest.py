import os
import sys
from datetime import datetime, timedelta

import pytest

# Ensure the backend root (containing the `bargain` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from bargain import create_app, db, socketio
from bargain.services.commerce import CommercePlatform
from bargain.services.play.config import StaticConfigStore, default_document
from bargain.services.play.store import MemoryStore


SHOP = 'demo-store.myshopify.com'


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ORIGINS = ['*']
    SESSION_TTL_SEC = 1800
    LATE_FINISH_POLICY = 'accept'
    IDENTIFY_BY_IP = True
    SCORE_CEILING = 10000
    MAX_POINTS_PER_SECOND = 200
    SCORE_GRACE_POINTS = 100
    GAME_POINTS_PER_SECOND = {'dino': 60}
    CODE_PREFIX = 'BARGAIN'
    CODE_ATTEMPTS = 5
    ISSUER_MAX_ATTEMPTS = 3
    ISSUER_BACKOFF_BASE_SEC = 0
    ISSUER_BACKOFF_MAX_SEC = 0
    STORE_RETRY_ATTEMPTS = 2
    SHOPIFY_WEBHOOK_SECRET = 'test-webhook-secret'


class FakeCommerce(CommercePlatform):
    """Records platform calls; queued exceptions are raised in order."""

    def __init__(self):
        self.price_rules = {}
        self.discount_codes = {}
        self.deleted = []
        self.calls = []
        self.price_rule_failures = []
        self.discount_code_failures = []
        self._next_id = 1000

    def _id(self):
        self._next_id += 1
        return str(self._next_id)

    def create_price_rule(self, shop_domain, code, percent, starts_at, ends_at, minimum_order_amount=None):
        self.calls.append(('price_rule', shop_domain, code))
        if self.price_rule_failures:
            raise self.price_rule_failures.pop(0)
        rule_id = self._id()
        self.price_rules[rule_id] = {
            'shop': shop_domain, 'code': code, 'percent': percent,
            'starts_at': starts_at, 'ends_at': ends_at, 'minimum_order_amount': minimum_order_amount,
        }
        return rule_id

    def create_discount_code(self, shop_domain, price_rule_id, code):
        self.calls.append(('discount_code', shop_domain, code))
        if self.discount_code_failures:
            raise self.discount_code_failures.pop(0)
        discount_id = self._id()
        self.discount_codes[code] = {'shop': shop_domain, 'price_rule_id': price_rule_id, 'id': discount_id}
        return discount_id

    def delete_price_rule(self, shop_domain, price_rule_id):
        self.calls.append(('delete_price_rule', shop_domain, price_rule_id))
        self.deleted.append(price_rule_id)
        self.price_rules.pop(price_rule_id, None)


class FrozenClock:

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 10, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


def scenario_document(**game_overrides):
    """Three plays a day, tiers 100 -> 10% and 300 -> 20%."""
    doc = default_document()
    doc['gameSettings'].update({
        'minScoreForDiscount': 100,
        'maxPlaysPerDay': 3,
        'maxPlaysPerCustomer': 0,
        'discountTiers': [
            {'minScore': 100, 'discountPercent': 10, 'message': 'Ten off!'},
            {'minScore': 300, 'discountPercent': 20, 'message': 'Twenty off!'},
        ],
    })
    doc['gameSettings'].update(game_overrides)
    return doc


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    application.extensions['commerce'] = FakeCommerce()
    with application.app_context():
        # Ensure models are imported so tables are created
        import bargain.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def commerce(flask_app):
    return flask_app.extensions['commerce']


@pytest.fixture()
def shop(flask_app):
    from bargain.services.play.config import SqlConfigStore
    SqlConfigStore().save(SHOP, scenario_document(), access_token='shpat_test')
    return SHOP


@pytest.fixture()
def admin_client(flask_app, client):
    from bargain.models import User
    user = User(username='admin')
    user.set_password('password')
    db.session.add(user)
    db.session.commit()
    res = client.post('/login', json={'username': 'admin', 'password': 'password'})
    assert res.status_code == 200
    return client


@pytest.fixture()
def sio_client(flask_app, admin_client):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=admin_client,
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


# Service-level doubles

@pytest.fixture()
def memory_store():
    return MemoryStore()


@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def fake_commerce():
    return FakeCommerce()


@pytest.fixture()
def configs():
    return StaticConfigStore({SHOP: scenario_document()})
