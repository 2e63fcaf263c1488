import logging
import secrets
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Optional

from bargain.services.commerce import CommerceError, CommercePlatform
from .config import ShopConfig, Tier
from .errors import IssuerUnavailable
from .records import CODE_ACTIVE, DiscountCode
from .store import Store


log = logging.getLogger(__name__)


class DiscountIssuer:
    """Allocates a code, registers it with the platform, persists it.

    The record is written as ``pending`` before any outbound call and only
    flipped to ``active`` once the platform has accepted the discount, so a
    code is never handed out that the checkout would refuse.
    """

    def __init__(self, store: Store, commerce: CommercePlatform, prefix='BARGAIN', code_attempts=5,
                 max_attempts=3, backoff_base=0.5, backoff_max=4.0,
                 sleep: Callable[[float], None] = time.sleep,
                 code_factory: Optional[Callable[[], str]] = None):
        self.store = store
        self.commerce = commerce
        self.prefix = prefix
        self.code_attempts = max(1, int(code_attempts))
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.sleep = sleep
        self.code_factory = code_factory or self.generate_code

    @classmethod
    def from_config(cls, store, commerce, cfg, **overrides):
        options = dict(
            prefix=cfg.get('CODE_PREFIX', 'BARGAIN'),
            code_attempts=cfg.get('CODE_ATTEMPTS', 5),
            max_attempts=cfg.get('ISSUER_MAX_ATTEMPTS', 3),
            backoff_base=cfg.get('ISSUER_BACKOFF_BASE_SEC', 0.5),
            backoff_max=cfg.get('ISSUER_BACKOFF_MAX_SEC', 4.0),
        )
        options.update(overrides)
        return cls(store, commerce, **options)

    def generate_code(self) -> str:
        return f'{self.prefix}{secrets.token_hex(4).upper()}'

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))

    def issue(self, shop_domain: str, tier: Tier, session_id: str, completed_at: datetime,
              config: ShopConfig, customer_id=None, customer_email=None) -> DiscountCode:
        expires_at = completed_at + timedelta(hours=config.discount_expiry_hours)
        record = self._allocate(DiscountCode(
            code='',
            shop_domain=shop_domain,
            session_id=session_id,
            percent=tier.discount_percent,
            tier_min_score=tier.min_score,
            expires_at=expires_at,
            created_at=completed_at,
            customer_id=customer_id,
            customer_email=customer_email,
        ))
        code = record.code
        try:
            price_rule_id = self._call('price_rule', shop_domain, code, lambda: self.commerce.create_price_rule(
                shop_domain, code, tier.discount_percent, completed_at, expires_at,
                minimum_order_amount=config.minimum_order_amount,
            ))
            try:
                discount_id = self._call('discount_code', shop_domain, code, lambda: self.commerce.create_discount_code(
                    shop_domain, price_rule_id, code,
                ))
            except CommerceError:
                self._drop_price_rule(shop_domain, price_rule_id)
                raise
        except CommerceError as exc:
            self.store.void_discount(shop_domain, code)
            log.error(f"[issue-fail] shop={shop_domain} session={session_id} code={code} error={exc}")
            raise IssuerUnavailable('discount could not be registered with the store',
                                    session_id=session_id) from exc

        self.store.activate_discount(shop_domain, code, price_rule_id, discount_id)
        log.info(f"[issue] shop={shop_domain} session={session_id} code={code} percent={tier.discount_percent}")
        return replace(record, status=CODE_ACTIVE, price_rule_id=price_rule_id, platform_discount_id=discount_id)

    def _allocate(self, template: DiscountCode) -> DiscountCode:
        for attempt in range(1, self.code_attempts + 1):
            record = replace(template, code=self.code_factory())
            if self.store.insert_discount(record):
                return record
            log.warning(f"[code-collision] shop={template.shop_domain} attempt={attempt}")
        raise IssuerUnavailable('could not allocate a unique discount code', session_id=template.session_id)

    def _call(self, step, shop_domain, code, fn):
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except CommerceError as exc:
                if not exc.transient or attempt >= self.max_attempts:
                    raise
                delay = self.backoff(attempt)
                log.warning(
                    f"[issue-retry] shop={shop_domain} code={code} step={step} attempt={attempt} delay={delay}s error={exc}"
                )
                self.sleep(delay)

    def _drop_price_rule(self, shop_domain, price_rule_id):
        try:
            self.commerce.delete_price_rule(shop_domain, price_rule_id)
        except CommerceError as exc:
            log.warning(f"[orphan-price-rule] shop={shop_domain} price_rule={price_rule_id} error={exc}")
