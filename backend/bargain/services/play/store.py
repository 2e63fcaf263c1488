"""Persistence contract for play sessions, discount codes and play counters.

Only the operations the pipeline needs are exposed. The two that guard the
invariants are conditional writes:

- ``conditional_increment`` bumps every given counter or none of them.
  ``start_session`` does the same and inserts the new session in that write.
- ``conditional_transition`` moves a session between states only when it is
  still in one of the expected states (and optional field values match).

``SqlStore`` backs the Flask app; ``MemoryStore`` honours the same contract
under a single lock and is what the service tests run against.
"""
import dataclasses
import functools
import json
import logging
import threading
import time
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, update
from sqlalchemy.exc import IntegrityError, OperationalError

from .errors import StoreUnavailable
from .records import (
    CODE_ACTIVE,
    CODE_FAILED,
    EXPIRED,
    PENDING,
    CounterLimit,
    DiscountCode,
    PlaySession,
)


log = logging.getLogger(__name__)

# Bulk UPDATE/DELETE statements never need to refresh in-session objects
_NO_SYNC = {"synchronize_session": False}


class Store:

    def create_session(self, session: PlaySession) -> None:
        raise NotImplementedError

    def get_session(self, session_id: str) -> Optional[PlaySession]:
        raise NotImplementedError

    def conditional_increment(self, limits: Sequence[CounterLimit]) -> Optional[List[int]]:
        """Increment all counters atomically; None (and no change) if any cap is hit."""
        raise NotImplementedError

    def start_session(self, limits: Sequence[CounterLimit], session: PlaySession) -> Optional[List[int]]:
        """``conditional_increment`` and ``create_session`` as one write.

        None when a cap is hit. A failed insert leaves every counter untouched.
        """
        raise NotImplementedError

    def reset_counters(self, shop_domain: str, customer_key: Optional[str] = None, period: Optional[str] = None) -> int:
        raise NotImplementedError

    def conditional_transition(self, session_id: str, from_states: Iterable[str], to_state: str,
                               expect: Optional[dict] = None, **changes) -> bool:
        raise NotImplementedError

    def expire_pending(self, created_before: datetime) -> int:
        raise NotImplementedError

    def insert_discount(self, discount: DiscountCode) -> bool:
        """Persist a new code; False when the code already exists for the shop."""
        raise NotImplementedError

    def update_discount(self, shop_domain: str, code: str, **changes) -> None:
        raise NotImplementedError

    def get_discount(self, shop_domain: str, code: str) -> Optional[DiscountCode]:
        raise NotImplementedError

    def mark_discount_used(self, shop_domain: str, code: str, order_id: Optional[str], used_at: datetime) -> bool:
        """Flip is_used false -> true; False when unknown or already used."""
        raise NotImplementedError

    # Shared helpers

    def activate_discount(self, shop_domain, code, price_rule_id, platform_discount_id):
        self.update_discount(shop_domain, code, status=CODE_ACTIVE,
                             price_rule_id=price_rule_id, platform_discount_id=platform_discount_id)

    def void_discount(self, shop_domain, code):
        self.update_discount(shop_domain, code, status=CODE_FAILED)


class MemoryStore(Store):

    def __init__(self):
        self._lock = threading.Lock()
        self._sessions: Dict[str, PlaySession] = {}
        self._discounts: Dict[Tuple[str, str], DiscountCode] = {}
        self._counters: Dict[Tuple[str, str, str], int] = {}

    def create_session(self, session):
        with self._lock:
            if session.session_id in self._sessions:
                raise StoreUnavailable(f'duplicate session {session.session_id}')
            self._sessions[session.session_id] = dataclasses.replace(session)

    def get_session(self, session_id):
        with self._lock:
            found = self._sessions.get(session_id)
            return dataclasses.replace(found) if found else None

    def counter(self, shop_domain, customer_key, period) -> int:
        with self._lock:
            return self._counters.get((shop_domain, customer_key, period), 0)

    def _bump(self, limits):
        keys = [(l.shop_domain, l.customer_key, l.period) for l in limits]
        for limit, key in zip(limits, keys):
            if limit.limit and self._counters.get(key, 0) >= limit.limit:
                return None
        counts = []
        for key in keys:
            self._counters[key] = self._counters.get(key, 0) + 1
            counts.append(self._counters[key])
        return counts

    def conditional_increment(self, limits):
        with self._lock:
            return self._bump(limits)

    def start_session(self, limits, session):
        with self._lock:
            if session.session_id in self._sessions:
                raise StoreUnavailable(f'duplicate session {session.session_id}')
            counts = self._bump(limits)
            if counts is not None:
                self._sessions[session.session_id] = dataclasses.replace(session)
            return counts

    def reset_counters(self, shop_domain, customer_key=None, period=None):
        with self._lock:
            doomed = [
                key for key in self._counters
                if key[0] == shop_domain
                and (customer_key is None or key[1] == customer_key)
                and (period is None or key[2] == period)
            ]
            for key in doomed:
                del self._counters[key]
            return len(doomed)

    def conditional_transition(self, session_id, from_states, to_state, expect=None, **changes):
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None or session.state not in set(from_states):
                return False
            for name, value in (expect or {}).items():
                if getattr(session, name) != value:
                    return False
            self._sessions[session_id] = dataclasses.replace(session, state=to_state, **changes)
            return True

    def expire_pending(self, created_before):
        with self._lock:
            stale = [s for s in self._sessions.values() if s.state == PENDING and s.created_at < created_before]
            for session in stale:
                self._sessions[session.session_id] = dataclasses.replace(session, state=EXPIRED)
            return len(stale)

    def insert_discount(self, discount):
        with self._lock:
            key = (discount.shop_domain, discount.code)
            if key in self._discounts:
                return False
            if any(d.session_id == discount.session_id for d in self._discounts.values()):
                return False
            self._discounts[key] = dataclasses.replace(discount)
            return True

    def update_discount(self, shop_domain, code, **changes):
        with self._lock:
            key = (shop_domain, code)
            if key in self._discounts:
                self._discounts[key] = dataclasses.replace(self._discounts[key], **changes)

    def get_discount(self, shop_domain, code):
        with self._lock:
            found = self._discounts.get((shop_domain, code))
            return dataclasses.replace(found) if found else None

    def mark_discount_used(self, shop_domain, code, order_id, used_at):
        with self._lock:
            key = (shop_domain, code)
            found = self._discounts.get(key)
            if found is None or found.is_used:
                return False
            self._discounts[key] = dataclasses.replace(found, is_used=True, used_at=used_at, order_id=order_id)
            return True


def _retrying(method):
    """Retry transient database faults, then surface StoreUnavailable."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        from bargain import db
        attempt = 0
        while True:
            attempt += 1
            try:
                return method(self, *args, **kwargs)
            except OperationalError as exc:
                db.session.rollback()
                if attempt >= self.retry_attempts:
                    log.error(f"[store-fail] op={method.__name__} attempts={attempt} error={exc.orig!r}")
                    raise StoreUnavailable('storage temporarily unavailable') from exc
                log.warning(f"[store-retry] op={method.__name__} attempt={attempt}")
                time.sleep(self.retry_delay * attempt)

    return wrapper


_SESSION_FIELDS = (
    'session_id', 'shop_domain', 'created_at', 'state', 'customer_id', 'customer_email',
    'customer_key', 'source', 'referrer', 'completed_at', 'final_score', 'discount_percent',
    'discount_code', 'issuance',
)
_DISCOUNT_FIELDS = (
    'code', 'shop_domain', 'session_id', 'percent', 'tier_min_score', 'expires_at', 'created_at',
    'status', 'price_rule_id', 'platform_discount_id', 'customer_id', 'customer_email', 'is_used',
    'used_at', 'order_id',
)


def _session_record(row) -> PlaySession:
    values = {name: getattr(row, name) for name in _SESSION_FIELDS}
    try:
        values['telemetry'] = json.loads(row.telemetry) if row.telemetry else {}
    except ValueError:
        values['telemetry'] = {}
    return PlaySession(**values)


def _discount_record(row) -> DiscountCode:
    return DiscountCode(**{name: getattr(row, name) for name in _DISCOUNT_FIELDS})


class SqlStore(Store):
    """Store over the Flask-SQLAlchemy session; requires an app context."""

    def __init__(self, retry_attempts=3, retry_delay=0.05):
        self.retry_attempts = max(1, int(retry_attempts))
        self.retry_delay = retry_delay

    @staticmethod
    def _session_columns(changes):
        if 'telemetry' in changes:
            changes = dict(changes)
            changes['telemetry'] = json.dumps(changes['telemetry'] or {})
        changes.pop('ip_address', None)
        changes.pop('user_agent', None)
        return changes

    @_retrying
    def create_session(self, session):
        from bargain import db
        from bargain.models import GameSession
        values = {name: getattr(session, name) for name in _SESSION_FIELDS}
        values['telemetry'] = json.dumps(session.telemetry or {})
        db.session.add(GameSession(**values))
        try:
            db.session.commit()
        except IntegrityError as exc:
            db.session.rollback()
            raise StoreUnavailable(f'duplicate session {session.session_id}') from exc

    @_retrying
    def get_session(self, session_id):
        from bargain import db
        from bargain.models import GameSession
        # Refresh an already-loaded row; a concurrent finish may have moved it on
        row = db.session.execute(
            db.select(GameSession).filter_by(session_id=session_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return _session_record(row) if row else None

    def _ensure_counter(self, limit):
        from bargain import db
        from bargain.models import PlayCounter
        table = PlayCounter.__table__
        values = {
            'shop_domain': limit.shop_domain,
            'customer_key': limit.customer_key,
            'period': limit.period,
            'count': 0,
        }
        dialect = db.session.get_bind().dialect.name
        if dialect == 'postgresql':
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == 'sqlite':
            from sqlalchemy.dialects.sqlite import insert
        else:
            exists = db.session.execute(
                db.select(PlayCounter.id).filter_by(
                    shop_domain=limit.shop_domain, customer_key=limit.customer_key, period=limit.period)
            ).first()
            if not exists:
                db.session.execute(table.insert().values(**values))
            return
        db.session.execute(insert(table).values(**values).on_conflict_do_nothing())

    @_retrying
    def conditional_increment(self, limits):
        from bargain import db
        counts = self._bump(limits)
        if counts is not None:
            db.session.commit()
        return counts

    @_retrying
    def start_session(self, limits, session):
        from bargain import db
        from bargain.models import GameSession
        counts = self._bump(limits)
        if counts is None:
            return None
        values = {name: getattr(session, name) for name in _SESSION_FIELDS}
        values['telemetry'] = json.dumps(session.telemetry or {})
        db.session.add(GameSession(**values))
        try:
            db.session.commit()
        except IntegrityError as exc:
            # Takes the counter increments down with it
            db.session.rollback()
            raise StoreUnavailable(f'duplicate session {session.session_id}') from exc
        return counts

    def _bump(self, limits):
        """Uncommitted increments of every counter; rolls back and returns None at a cap."""
        from bargain import db
        from bargain.models import PlayCounter
        counts = []
        for limit in limits:
            self._ensure_counter(limit)
            key = and_(
                PlayCounter.shop_domain == limit.shop_domain,
                PlayCounter.customer_key == limit.customer_key,
                PlayCounter.period == limit.period,
            )
            stmt = update(PlayCounter).where(key).values(count=PlayCounter.count + 1)
            if limit.limit:
                stmt = stmt.where(PlayCounter.count < limit.limit)
            result = db.session.execute(stmt, execution_options=_NO_SYNC)
            if result.rowcount != 1:
                # A cap was reached: undo every increment of this call
                db.session.rollback()
                return None
            counts.append(db.session.execute(db.select(PlayCounter.count).where(key)).scalar_one())
        return counts

    @_retrying
    def reset_counters(self, shop_domain, customer_key=None, period=None):
        from bargain import db
        from bargain.models import PlayCounter
        stmt = delete(PlayCounter).where(PlayCounter.shop_domain == shop_domain)
        if customer_key is not None:
            stmt = stmt.where(PlayCounter.customer_key == customer_key)
        if period is not None:
            stmt = stmt.where(PlayCounter.period == period)
        result = db.session.execute(stmt, execution_options=_NO_SYNC)
        db.session.commit()
        return result.rowcount

    @_retrying
    def conditional_transition(self, session_id, from_states, to_state, expect=None, **changes):
        from bargain import db
        from bargain.models import GameSession
        stmt = (
            update(GameSession)
            .where(GameSession.session_id == session_id, GameSession.state.in_(list(from_states)))
            .values(state=to_state, **self._session_columns(changes))
        )
        for name, value in (expect or {}).items():
            column = getattr(GameSession, name)
            stmt = stmt.where(column.is_(None) if value is None else column == value)
        result = db.session.execute(stmt, execution_options=_NO_SYNC)
        db.session.commit()
        return result.rowcount == 1

    @_retrying
    def expire_pending(self, created_before):
        from bargain import db
        from bargain.models import GameSession
        result = db.session.execute(
            update(GameSession)
            .where(GameSession.state == PENDING, GameSession.created_at < created_before)
            .values(state=EXPIRED),
            execution_options=_NO_SYNC,
        )
        db.session.commit()
        return result.rowcount

    @_retrying
    def insert_discount(self, discount):
        from bargain import db
        from bargain.models import Discount
        db.session.add(Discount(**{name: getattr(discount, name) for name in _DISCOUNT_FIELDS}))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            return False
        return True

    @_retrying
    def update_discount(self, shop_domain, code, **changes):
        from bargain import db
        from bargain.models import Discount
        db.session.execute(
            update(Discount)
            .where(Discount.shop_domain == shop_domain, Discount.code == code)
            .values(**changes),
            execution_options=_NO_SYNC,
        )
        db.session.commit()

    @_retrying
    def get_discount(self, shop_domain, code):
        from bargain import db
        from bargain.models import Discount
        row = db.session.execute(
            db.select(Discount).filter_by(shop_domain=shop_domain, code=code)
        ).scalar_one_or_none()
        return _discount_record(row) if row else None

    @_retrying
    def mark_discount_used(self, shop_domain, code, order_id, used_at):
        from bargain import db
        from bargain.models import Discount
        result = db.session.execute(
            update(Discount)
            .where(Discount.shop_domain == shop_domain, Discount.code == code, Discount.is_used == False)  # noqa: E712
            .values(is_used=True, used_at=used_at, order_id=order_id),
            execution_options=_NO_SYNC,
        )
        db.session.commit()
        return result.rowcount == 1
