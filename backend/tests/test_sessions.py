import threading
from datetime import timedelta

import pytest

from conftest import SHOP, scenario_document
from bargain.services.play.config import StaticConfigStore
from bargain.services.play.errors import AlreadyCompleted, RateLimitExceeded, SessionNotFound, ShopDisabled
from bargain.services.play.records import ABANDONED, EXPIRED, LIFETIME, PENDING, SHOP_WIDE
from bargain.services.play.sessions import Customer, SessionController, counter_limits, customer_key


def _controller(store, configs, clock, **kwargs):
    return SessionController(store, configs, clock=clock, **kwargs)


def test_start_persists_pending_session(memory_store, configs, clock):
    result = _controller(memory_store, configs, clock).start(SHOP, customer=Customer(id='42'), source='popup')
    session = memory_store.get_session(result.session.session_id)
    assert session.state == PENDING
    assert session.customer_key == 'id:42'
    assert session.created_at == clock.now
    assert result.plays_remaining == 2


def test_unknown_or_disabled_shop_is_refused(memory_store, clock):
    disabled = scenario_document()
    disabled['isEnabled'] = False
    configs = StaticConfigStore({'off.myshopify.com': disabled})
    controller = _controller(memory_store, configs, clock)
    with pytest.raises(ShopDisabled):
        controller.start('off.myshopify.com')
    with pytest.raises(ShopDisabled):
        controller.start('unknown.myshopify.com')


def test_invalid_config_is_treated_as_disabled(memory_store, clock):
    broken = scenario_document(discountTiers=[{'minScore': 300, 'discount': 5}, {'minScore': 100, 'discount': 9}])
    controller = _controller(memory_store, StaticConfigStore({SHOP: broken}), clock)
    with pytest.raises(ShopDisabled):
        controller.start(SHOP)


def test_daily_cap_and_reset_time(memory_store, configs, clock):
    controller = _controller(memory_store, configs, clock)
    customer = Customer(email='Shopper@Example.com')
    remaining = [controller.start(SHOP, customer=customer).plays_remaining for _ in range(3)]
    assert remaining == [2, 1, 0]
    with pytest.raises(RateLimitExceeded) as excinfo:
        controller.start(SHOP, customer=customer)
    body = excinfo.value.to_dict()
    assert body['playsRemaining'] == 0
    assert body['canPlay'] is False
    assert body['reason'] == 'rate_limited'
    assert body['nextResetTime'] == '2026-03-11T00:00:00Z'
    # The rejected call changed nothing
    assert memory_store.counter(SHOP, 'email:shopper@example.com', '2026-03-10') == 3

    clock.advance(days=1)
    assert controller.start(SHOP, customer=customer).plays_remaining == 2


def test_customers_are_counted_separately(memory_store, configs, clock):
    controller = _controller(memory_store, configs, clock)
    for _ in range(3):
        controller.start(SHOP, customer=Customer(id='a'))
    assert controller.start(SHOP, customer=Customer(id='b')).plays_remaining == 2


def test_lifetime_scope_has_no_reset(memory_store, clock):
    doc = scenario_document(maxPlaysPerCustomer=2, playLimitScope='lifetime', maxPlaysPerDay=0)
    controller = _controller(memory_store, StaticConfigStore({SHOP: doc}), clock)
    controller.start(SHOP, customer=Customer(id='7'))
    clock.advance(days=3)
    controller.start(SHOP, customer=Customer(id='7'))
    with pytest.raises(RateLimitExceeded) as excinfo:
        controller.start(SHOP, customer=Customer(id='7'))
    assert excinfo.value.details['nextResetTime'] is None
    assert memory_store.counter(SHOP, 'id:7', LIFETIME) == 2


def test_shop_wide_cap(memory_store, clock):
    doc = scenario_document(maxSessionsPerDay=2, maxPlaysPerDay=0)
    controller = _controller(memory_store, StaticConfigStore({SHOP: doc}), clock)
    controller.start(SHOP, customer=Customer(id='1'))
    controller.start(SHOP, customer=Customer(id='2'))
    with pytest.raises(RateLimitExceeded):
        controller.start(SHOP, customer=Customer(id='3'))
    # The per-customer counter of the refused visitor was not bumped either
    assert memory_store.counter(SHOP, 'id:3', '2026-03-10') == 0
    assert memory_store.counter(SHOP, SHOP_WIDE, '2026-03-10') == 2


def test_anonymous_visitor_identity():
    assert customer_key(None, '10.0.0.1') == 'ip:10.0.0.1'
    assert customer_key(None, '10.0.0.1', identify_by_ip=False) is None
    assert customer_key(Customer(id='5', email='x@y.z'), '10.0.0.1') == 'id:5'


def test_uncapped_shop_reports_unlimited(memory_store, clock):
    doc = scenario_document(maxPlaysPerDay=0, maxPlaysPerCustomer=0)
    controller = _controller(memory_store, StaticConfigStore({SHOP: doc}), clock, identify_by_ip=False)
    assert controller.start(SHOP).plays_remaining == -1


def test_counter_limits_daily_scope_takes_tighter_cap(configs, clock):
    config = StaticConfigStore({SHOP: scenario_document(maxPlaysPerCustomer=2)}).get(SHOP)
    limits = counter_limits(config, 'id:1', clock.now)
    assert [(l.customer_key, l.period, l.limit) for l in limits] == [
        (SHOP_WIDE, '2026-03-10', 0),
        ('id:1', '2026-03-10', 2),
    ]


def test_concurrent_starts_never_exceed_cap(memory_store, configs, clock):
    controller = _controller(memory_store, configs, clock)
    barrier = threading.Barrier(12)
    started, refused = [], []

    def play():
        barrier.wait()
        try:
            started.append(controller.start(SHOP, customer=Customer(id='racer')))
        except RateLimitExceeded:
            refused.append(True)

    threads = [threading.Thread(target=play) for _ in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(started) == 3
    assert len(refused) == 9
    assert memory_store.counter(SHOP, 'id:racer', '2026-03-10') == 3


def test_abandon(memory_store, configs, clock):
    controller = _controller(memory_store, configs, clock)
    session = controller.start(SHOP).session
    assert controller.abandon(session.session_id).state == ABANDONED
    # Repeating is harmless
    assert controller.abandon(session.session_id).state == ABANDONED
    with pytest.raises(SessionNotFound):
        controller.abandon('nope')


def test_abandon_after_expiry_is_refused(memory_store, configs, clock):
    controller = _controller(memory_store, configs, clock, ttl_seconds=60)
    session = controller.start(SHOP).session
    clock.advance(seconds=61)
    assert controller.expire_stale() == 1
    with pytest.raises(AlreadyCompleted):
        controller.abandon(session.session_id)


def test_expire_stale_only_touches_old_pending_sessions(memory_store, configs, clock):
    controller = _controller(memory_store, configs, clock, ttl_seconds=600)
    old = controller.start(SHOP, customer=Customer(id='1')).session
    clock.advance(minutes=5)
    fresh = controller.start(SHOP, customer=Customer(id='2')).session
    gone = controller.start(SHOP, customer=Customer(id='3')).session
    controller.abandon(gone.session_id)

    clock.advance(minutes=6)
    assert controller.expire_stale() == 1
    assert memory_store.get_session(old.session_id).state == EXPIRED
    assert memory_store.get_session(fresh.session_id).state == PENDING
    assert memory_store.get_session(gone.session_id).state == ABANDONED
    assert controller.is_stale(fresh, clock.now + timedelta(minutes=5))
