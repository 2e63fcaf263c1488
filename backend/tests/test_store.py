import threading
from datetime import datetime

import pytest

from conftest import SHOP, TestConfig as BaseConfig
from bargain import create_app, db
from bargain.models import PlayCounter
from bargain.services.play.errors import StoreUnavailable
from bargain.services.play.records import PENDING, SHOP_WIDE, CounterLimit, PlaySession
from bargain.services.play.store import MemoryStore, SqlStore

TODAY = '2026-03-10'
CREATED_AT = datetime(2026, 3, 10, 12, 0, 0)


def _limits(customer='id:racer', cap=3):
    return [CounterLimit(SHOP, SHOP_WIDE, TODAY, 0), CounterLimit(SHOP, customer, TODAY, cap)]


def _session(session_id):
    return PlaySession(session_id=session_id, shop_domain=SHOP, created_at=CREATED_AT, state=PENDING,
                       customer_key='id:racer')


def _count(customer_key):
    row = PlayCounter.query.filter_by(shop_domain=SHOP, customer_key=customer_key, period=TODAY).first()
    return row.count if row else 0


def test_sql_start_session_writes_counters_and_session(flask_app):
    store = SqlStore()
    assert store.start_session(_limits(), _session('s-1')) == [1, 1]
    assert store.get_session('s-1').state == PENDING
    assert _count('id:racer') == 1


def test_sql_failed_session_insert_keeps_counters(flask_app):
    store = SqlStore()
    store.start_session(_limits(), _session('s-1'))
    with pytest.raises(StoreUnavailable):
        store.start_session(_limits(), _session('s-1'))
    assert _count('id:racer') == 1
    assert _count(SHOP_WIDE) == 1


def test_sql_start_session_at_cap_creates_nothing(flask_app):
    store = SqlStore()
    for n in range(3):
        store.start_session(_limits(), _session(f's-{n}'))
    assert store.start_session(_limits(), _session('s-over')) is None
    assert store.get_session('s-over') is None
    assert _count(SHOP_WIDE) == 3


def test_memory_failed_session_insert_keeps_counters():
    store = MemoryStore()
    store.start_session(_limits(), _session('s-1'))
    with pytest.raises(StoreUnavailable):
        store.start_session(_limits(), _session('s-1'))
    assert store.counter(SHOP, 'id:racer', TODAY) == 1


@pytest.fixture()
def file_app(tmp_path):
    class FileConfig(BaseConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'plays.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'timeout': 30, 'check_same_thread': False}}

    application = create_app(FileConfig)
    with application.app_context():
        db.create_all()
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def test_concurrent_sql_increments_never_exceed_cap(file_app):
    barrier = threading.Barrier(12)
    granted, refused, errors = [], [], []

    def play():
        barrier.wait()
        with file_app.app_context():
            try:
                counts = SqlStore(retry_attempts=5).conditional_increment(_limits())
            except StoreUnavailable as exc:
                errors.append(exc)
                return
            (granted if counts else refused).append(counts)

    threads = [threading.Thread(target=play) for _ in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(granted) == 3
    assert len(refused) == 9
    assert sorted(counts[1] for counts in granted) == [1, 2, 3]
    with file_app.app_context():
        assert _count('id:racer') == 3
        # Refused calls rolled back their shop-wide increment too
        assert _count(SHOP_WIDE) == 3
