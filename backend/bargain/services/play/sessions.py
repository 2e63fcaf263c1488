import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from bargain.models import utcnow
from .config import ConfigStore, ShopConfig
from .errors import AlreadyCompleted, ConfigError, RateLimitExceeded, SessionNotFound, ShopDisabled
from .records import ABANDONED, LIFETIME, PENDING, SHOP_WIDE, CounterLimit, PlaySession
from .store import Store


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Customer:
    id: Optional[str] = None
    email: Optional[str] = None


@dataclass
class StartResult:
    session: PlaySession
    plays_remaining: int
    config: ShopConfig


def customer_key(customer: Optional[Customer], ip_address: Optional[str] = None,
                 identify_by_ip: bool = True) -> Optional[str]:
    """Identity the per-customer play counters are keyed on."""
    if customer and customer.id:
        return f'id:{customer.id}'
    if customer and customer.email:
        return f'email:{customer.email.strip().lower()}'
    if identify_by_ip and ip_address:
        return f'ip:{ip_address}'
    return None


def day_key(now: datetime) -> str:
    return now.date().isoformat()


def counter_limits(config: ShopConfig, key: Optional[str], now: datetime) -> List[CounterLimit]:
    """Counters one session start must bump, each with its cap (0 = none)."""
    shop = config.shop_domain
    today = day_key(now)
    limits = [CounterLimit(shop, SHOP_WIDE, today, config.max_sessions_per_day)]
    if key is None:
        return limits
    daily_caps = [c for c in (config.max_plays_per_day,) if c]
    if config.play_limit_scope == 'daily' and config.max_plays_per_customer:
        daily_caps.append(config.max_plays_per_customer)
    limits.append(CounterLimit(shop, key, today, min(daily_caps) if daily_caps else 0))
    if config.play_limit_scope == 'lifetime':
        limits.append(CounterLimit(shop, key, LIFETIME, config.max_plays_per_customer))
    return limits


def next_reset(limits: List[CounterLimit], now: datetime) -> Optional[datetime]:
    if any(l.period == LIFETIME and l.limit for l in limits):
        return None
    return datetime.combine(now.date() + timedelta(days=1), datetime.min.time())


class SessionController:
    """Starts play sessions behind the per-shop and per-customer play caps."""

    def __init__(self, store: Store, configs: ConfigStore, ttl_seconds: int = 1800,
                 identify_by_ip: bool = True, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.configs = configs
        self.ttl = timedelta(seconds=ttl_seconds)
        self.identify_by_ip = identify_by_ip
        self.clock = clock

    def load_config(self, shop_domain: str) -> ShopConfig:
        """Server-side enablement check; a broken config counts as disabled."""
        try:
            config = self.configs.get(shop_domain)
        except ConfigError as exc:
            log.error(f"[config] shop={shop_domain} rejected: {exc.message}")
            raise ShopDisabled('Game is not enabled for this shop') from exc
        if config is None or not config.is_enabled:
            raise ShopDisabled('Game is not enabled for this shop')
        return config

    def start(self, shop_domain: str, customer: Optional[Customer] = None, source: str = 'popup',
              referrer: Optional[str] = None, ip_address: Optional[str] = None,
              user_agent: Optional[str] = None) -> StartResult:
        config = self.load_config(shop_domain)
        now = self.clock()
        key = customer_key(customer, ip_address, self.identify_by_ip)
        limits = counter_limits(config, key, now)
        session = PlaySession(
            session_id=str(uuid.uuid4()),
            shop_domain=shop_domain,
            created_at=now,
            state=PENDING,
            customer_id=customer.id if customer else None,
            customer_email=customer.email if customer else None,
            customer_key=key,
            source=source or 'popup',
            referrer=referrer,
            ip_address=ip_address,
            user_agent=user_agent,
        )

        counts = self.store.start_session(limits, session)
        if counts is None:
            reset_at = next_reset(limits, now)
            log.info(f"[rate-limit] shop={shop_domain} customer={key}")
            raise RateLimitExceeded(
                'No plays remaining',
                reason='rate_limited',
                canPlay=False,
                playsRemaining=0,
                nextResetTime=reset_at.isoformat() + 'Z' if reset_at else None,
            )

        remaining = [l.limit - c for l, c in zip(limits, counts) if l.limit]
        plays_remaining = min(remaining) if remaining else -1
        log.info(f"[start] shop={shop_domain} session={session.session_id} customer={key} remaining={plays_remaining}")
        return StartResult(session=session, plays_remaining=plays_remaining, config=config)

    def abandon(self, session_id: str) -> PlaySession:
        """Client closed the game before finishing: pending -> abandoned."""
        if not self.store.conditional_transition(session_id, {PENDING}, ABANDONED):
            session = self.store.get_session(session_id)
            if session is None:
                raise SessionNotFound(f'Session {session_id} not found')
            if session.state != ABANDONED:
                raise AlreadyCompleted(f'Session {session_id} is {session.state}')
            return session
        log.info(f"[abandon] session={session_id}")
        return self.store.get_session(session_id)

    def is_stale(self, session: PlaySession, now: Optional[datetime] = None) -> bool:
        return (now or self.clock()) - session.created_at > self.ttl

    def expire_stale(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self.clock()) - self.ttl
        expired = self.store.expire_pending(cutoff)
        if expired:
            log.info(f"[sweep] expired={expired} cutoff={cutoff.isoformat()}")
        return expired
