"""Accepts the reported result of a play session, exactly once.

The session id is the idempotency key. The first call that moves a session
to ``completed`` decides its outcome; every later call, concurrent or not,
replays that outcome instead of computing a new one.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from bargain.models import utcnow
from .config import ConfigStore, ShopConfig
from .errors import (
    AlreadyCompleted,
    ConfigError,
    InvalidScore,
    IssuerUnavailable,
    SessionExpired,
    SessionNotFound,
    ShopDisabled,
    ValidationError,
)
from .issuer import DiscountIssuer
from .records import (
    ABANDONED,
    COMPLETED,
    EXPIRED,
    ISSUANCE_FAILED,
    ISSUANCE_ISSUED,
    ISSUANCE_NONE,
    ISSUANCE_PENDING,
    PENDING,
    DiscountCode,
    PlaySession,
)
from .store import Store
from .tiers import next_tier_score, resolve_tier, score_message


log = logging.getLogger(__name__)

LATE_FINISH_POLICIES = ('accept', 'reject')
REWARD_PENDING_MESSAGE = 'Your score is saved. Your reward is still being prepared.'


@dataclass
class DiscountOutcome:
    session_id: str
    final_score: int
    discount_percent: int = 0
    code: Optional[str] = None
    expires_at: Optional[datetime] = None
    message: str = ''
    next_tier_score: Optional[int] = None
    reward_pending: bool = False
    replay: bool = False

    @property
    def has_code(self) -> bool:
        return self.code is not None

    def to_dict(self):
        return {
            'success': True,
            'sessionId': self.session_id,
            'finalScore': self.final_score,
            # Widgets render this as "N% OFF"; 0 when no code was issued
            'discountEarned': self.discount_percent if self.has_code else 0,
            'discountCode': self.code,
            'discountPercent': self.discount_percent,
            'expiresAt': self.expires_at.isoformat() + 'Z' if self.expires_at else None,
            'message': self.message,
            'nextTierScore': self.next_tier_score,
            'rewardPending': self.reward_pending,
            'replay': self.replay,
        }


@dataclass(frozen=True)
class ScorePolicy:
    """Plausibility bounds for a reported score."""
    ceiling: int = 10000
    points_per_second: int = 200
    grace_points: int = 100
    per_game: Optional[Dict[str, int]] = None

    @classmethod
    def from_config(cls, cfg):
        return cls(
            ceiling=cfg.get('SCORE_CEILING', 10000),
            points_per_second=cfg.get('MAX_POINTS_PER_SECOND', 200),
            grace_points=cfg.get('SCORE_GRACE_POINTS', 100),
            per_game=dict(cfg.get('GAME_POINTS_PER_SECOND') or {}),
        )

    def max_score(self, game_type: str, telemetry: Optional[dict]) -> int:
        duration_ms = _duration_ms(telemetry)
        if not duration_ms:
            return self.ceiling
        rate = (self.per_game or {}).get(game_type, self.points_per_second)
        return min(self.ceiling, int(rate * duration_ms / 1000) + self.grace_points)


def _duration_ms(telemetry) -> Optional[float]:
    """Elapsed play time reported by the game engine, in milliseconds."""
    if not isinstance(telemetry, dict):
        return None
    for key in ('duration', 'timeSpent'):
        value = telemetry.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
            return float(value)
    return None


def check_score(final_score) -> int:
    if isinstance(final_score, bool) or not isinstance(final_score, int):
        raise ValidationError('finalScore must be an integer')
    return final_score


class GameResultIntake:

    def __init__(self, store: Store, configs: ConfigStore, issuer: DiscountIssuer,
                 score_policy: Optional[ScorePolicy] = None, late_finish_policy: str = 'accept',
                 ttl_seconds: int = 1800, clock: Callable[[], datetime] = utcnow,
                 settle_timeout: float = 15.0, settle_interval: float = 0.05,
                 sleep: Callable[[float], None] = time.sleep):
        if late_finish_policy not in LATE_FINISH_POLICIES:
            raise ValueError(f'late_finish_policy must be one of {LATE_FINISH_POLICIES}')
        self.store = store
        self.configs = configs
        self.issuer = issuer
        self.score_policy = score_policy or ScorePolicy()
        self.late_finish_policy = late_finish_policy
        self.ttl = timedelta(seconds=ttl_seconds)
        self.clock = clock
        self.settle_timeout = settle_timeout
        self.settle_interval = settle_interval
        self.sleep = sleep

    @property
    def finishable_states(self):
        if self.late_finish_policy == 'accept':
            return {PENDING, EXPIRED}
        return {PENDING}

    def finish(self, session_id: str, final_score, telemetry: Optional[dict] = None,
               customer_email: Optional[str] = None) -> DiscountOutcome:
        if not session_id:
            raise ValidationError('sessionId is required')
        score = check_score(final_score)

        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound(f'Session {session_id} not found')
        if session.state == COMPLETED:
            return self.replay(self._settled(session))
        self._check_open(session)

        config = self._config(session.shop_domain)
        ceiling = self.score_policy.max_score(config.game_type, telemetry)
        if score < 0 or score > ceiling:
            log.warning(f"[invalid-score] shop={session.shop_domain} session={session_id} score={score} max={ceiling}")
            raise InvalidScore(f'finalScore must be between 0 and {ceiling}', maxScore=ceiling)

        tier = resolve_tier(score, config.discount_tiers)
        earns = tier is not None and tier.discount_percent > 0 and score >= config.min_score_for_discount
        completed_at = self.clock()
        changes = dict(
            final_score=score,
            completed_at=completed_at,
            discount_percent=tier.discount_percent if earns else 0,
            issuance=ISSUANCE_PENDING if earns else ISSUANCE_NONE,
            telemetry=telemetry or {},
        )
        if customer_email and not session.customer_email:
            changes['customer_email'] = customer_email

        if not self.store.conditional_transition(session_id, self.finishable_states, COMPLETED, **changes):
            # Someone else moved the session first
            current = self.store.get_session(session_id)
            if current is not None and current.state == COMPLETED:
                return self.replay(self._settled(current), config)
            self._check_open(current or session)
            raise AlreadyCompleted(f'Session {session_id} changed state during finish')

        log.info(
            f"[finish] shop={session.shop_domain} session={session_id} score={score} "
            f"percent={changes['discount_percent']}"
        )
        upcoming = next_tier_score(score, config.discount_tiers)
        if not earns:
            return DiscountOutcome(
                session_id=session_id,
                final_score=score,
                message=score_message(score, None, config.discount_tiers),
                next_tier_score=upcoming,
            )

        try:
            discount = self.issuer.issue(
                session.shop_domain, tier, session_id, completed_at, config,
                customer_id=session.customer_id,
                customer_email=changes.get('customer_email', session.customer_email),
            )
        except IssuerUnavailable:
            self.store.conditional_transition(
                session_id, {COMPLETED}, COMPLETED,
                expect={'issuance': ISSUANCE_PENDING}, issuance=ISSUANCE_FAILED,
            )
            log.error(f"[reward-pending] shop={session.shop_domain} session={session_id}")
            return DiscountOutcome(
                session_id=session_id,
                final_score=score,
                discount_percent=tier.discount_percent,
                message=REWARD_PENDING_MESSAGE,
                next_tier_score=upcoming,
                reward_pending=True,
            )

        self.store.conditional_transition(
            session_id, {COMPLETED}, COMPLETED,
            expect={'issuance': ISSUANCE_PENDING}, issuance=ISSUANCE_ISSUED, discount_code=discount.code,
        )
        return self._issued(session_id, score, discount, config)

    def replay(self, session: PlaySession, config: Optional[ShopConfig] = None) -> DiscountOutcome:
        """Outcome of an already-completed session, as first computed."""
        score = session.final_score or 0
        config = config or self._config_for_replay(session.shop_domain)
        tiers = config.discount_tiers if config else ()
        upcoming = next_tier_score(score, tiers)

        if session.issuance == ISSUANCE_ISSUED and session.discount_code:
            discount = self.store.get_discount(session.shop_domain, session.discount_code)
            if discount is not None:
                outcome = self._issued(session.session_id, score, discount, config, tiers=tiers)
                outcome.replay = True
                return outcome
        if session.issuance in (ISSUANCE_PENDING, ISSUANCE_FAILED, ISSUANCE_ISSUED):
            return DiscountOutcome(
                session_id=session.session_id,
                final_score=score,
                discount_percent=session.discount_percent,
                message=REWARD_PENDING_MESSAGE,
                next_tier_score=upcoming,
                reward_pending=True,
                replay=True,
            )
        return DiscountOutcome(
            session_id=session.session_id,
            final_score=score,
            message=score_message(score, None, tiers),
            next_tier_score=upcoming,
            replay=True,
        )

    def _settled(self, session: PlaySession) -> PlaySession:
        """Re-read a completed session until the winning finish has issued or failed.

        Gives up after ``settle_timeout`` seconds; a session still pending by
        then replays as reward-pending.
        """
        waited = 0.0
        while session.issuance == ISSUANCE_PENDING and waited < self.settle_timeout:
            self.sleep(self.settle_interval)
            waited += self.settle_interval
            session = self.store.get_session(session.session_id) or session
        if session.issuance == ISSUANCE_PENDING:
            log.warning(f"[settle-timeout] session={session.session_id} waited={waited:.2f}s")
        return session

    def _issued(self, session_id, score, discount: DiscountCode, config, tiers=None) -> DiscountOutcome:
        tiers = tiers if tiers is not None else config.discount_tiers
        tier = resolve_tier(score, tiers)
        return DiscountOutcome(
            session_id=session_id,
            final_score=score,
            discount_percent=discount.percent,
            code=discount.code,
            expires_at=discount.expires_at,
            message=score_message(score, tier, tiers) if tier else f'You earned {discount.percent}% off!',
            next_tier_score=next_tier_score(score, tiers),
        )

    def _check_open(self, session: PlaySession):
        if session.state == ABANDONED:
            raise AlreadyCompleted(f'Session {session.session_id} was abandoned')
        if session.state == EXPIRED and self.late_finish_policy == 'reject':
            raise SessionExpired(f'Session {session.session_id} has expired')
        if (session.state == PENDING and self.late_finish_policy == 'reject'
                and self.clock() - session.created_at > self.ttl):
            self.store.conditional_transition(session.session_id, {PENDING}, EXPIRED)
            raise SessionExpired(f'Session {session.session_id} has expired')

    def _config(self, shop_domain) -> ShopConfig:
        try:
            config = self.configs.get(shop_domain)
        except ConfigError as exc:
            log.error(f"[config] shop={shop_domain} rejected at finish: {exc.message}")
            raise ShopDisabled('Game is not available for this shop') from exc
        if config is None:
            raise ShopDisabled('Game is not available for this shop')
        return config

    def _config_for_replay(self, shop_domain) -> Optional[ShopConfig]:
        try:
            return self.configs.get(shop_domain)
        except ConfigError as exc:
            log.warning(f"[config] shop={shop_domain} unreadable during replay: {exc.message}")
            return None


def validate_discount(store: Store, shop_domain: str, code: str, now: Optional[datetime] = None) -> dict:
    """Downstream check of a code: ``{valid, reason}``."""
    discount = store.get_discount(shop_domain, (code or '').strip().upper())
    if discount is None:
        return {'valid': False, 'reason': 'not_found'}
    reason = discount.unusable_reason(now or utcnow())
    return {
        'valid': reason is None,
        'reason': reason,
        'code': discount.code,
        'discountPercent': discount.percent,
        'expiresAt': discount.expires_at.isoformat() + 'Z',
    }
