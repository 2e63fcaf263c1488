"""Validated per-shop configuration.

Shops store their settings as a loosely-typed JSON document (the layout the
dashboard writes: ``isEnabled``, ``gameSettings``, ``widgetSettings``,
``businessRules``). ``ShopConfig.from_document`` turns that document into an
immutable, checked value once, at load time, so a malformed tier table is
rejected before any score is ever resolved against it.
"""
import copy
import json
import re
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .errors import ConfigError


TRIGGER_EVENTS = ('immediate', 'exit_intent', 'time_delay', 'scroll')
POSITIONS = ('top-left', 'top-right', 'bottom-left', 'bottom-right', 'center')
SHOW_ON = ('all_pages', 'homepage', 'product_pages', 'collection_pages', 'cart_page', 'checkout_page', 'custom')
DEVICE_TARGETS = ('all', 'desktop', 'mobile', 'tablet')
LIMIT_SCOPES = ('daily', 'lifetime')

_HHMM = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)$')

DEFAULT_DOCUMENT = {
    'isEnabled': True,
    'gameSettings': {
        'gameType': 'dino',
        'minScoreForDiscount': 150,
        'maxPlaysPerCustomer': 3,
        'maxPlaysPerDay': 10,
        'maxSessionsPerDay': 0,
        'playLimitScope': 'daily',
        'discountTiers': [
            {'minScore': 0, 'discount': 0, 'message': 'Keep hunting!'},
            {'minScore': 150, 'discount': 5, 'message': 'Nice start!'},
            {'minScore': 300, 'discount': 10, 'message': 'Getting warmer!'},
            {'minScore': 500, 'discount': 15, 'message': 'Bargain expert!'},
            {'minScore': 750, 'discount': 20, 'message': 'Sale master!'},
            {'minScore': 1000, 'discount': 25, 'message': 'LEGENDARY HUNTER!'},
        ],
    },
    'widgetSettings': {
        'triggerEvent': 'immediate',
        'position': 'bottom-right',
        'showOn': 'all_pages',
        'customPages': [],
        'userPercentage': 100,
        'testMode': False,
        'deviceTargeting': 'all',
        'timeBasedRules': {'enabled': False},
    },
    'businessRules': {
        'excludeDiscountedProducts': False,
        'allowStackingDiscounts': False,
        'discountExpiryHours': 24,
    },
}


def default_document() -> dict:
    return copy.deepcopy(DEFAULT_DOCUMENT)


@dataclass(frozen=True)
class Tier:
    min_score: int
    discount_percent: int
    message: str = ''

    def to_dict(self):
        return {'minScore': self.min_score, 'discount': self.discount_percent, 'message': self.message}


@dataclass(frozen=True)
class TimeRules:
    enabled: bool = False
    start_minute: Optional[int] = None
    end_minute: Optional[int] = None
    days_of_week: Tuple[int, ...] = ()  # 0 = Sunday


@dataclass(frozen=True)
class ShopConfig:
    shop_domain: str
    is_enabled: bool
    discount_tiers: Tuple[Tier, ...]
    min_score_for_discount: int = 0
    max_plays_per_customer: int = 0
    max_plays_per_day: int = 0
    max_sessions_per_day: int = 0
    play_limit_scope: str = 'daily'
    game_type: str = 'dino'
    discount_expiry_hours: int = 24
    exclude_discounted_products: bool = False
    allow_stacking_discounts: bool = False
    minimum_order_amount: Optional[float] = None
    user_percentage: int = 100
    test_mode: bool = False
    trigger_event: str = 'immediate'
    position: str = 'bottom-right'
    show_on: str = 'all_pages'
    custom_pages: Tuple[str, ...] = ()
    device_targeting: str = 'all'
    time_rules: TimeRules = field(default_factory=TimeRules)

    @classmethod
    def from_document(cls, shop_domain: str, doc) -> 'ShopConfig':
        """Build a config from a stored document or raise ``ConfigError``."""
        if not isinstance(doc, dict):
            raise ConfigError(f'configuration for {shop_domain} is not an object')
        if '_corrupt' in doc:
            raise ConfigError(f'configuration for {shop_domain} is not valid JSON')
        game = _section(doc, 'gameSettings')
        widget = _section(doc, 'widgetSettings')
        rules = _section(doc, 'businessRules')

        tiers = _tiers(game.get('discountTiers'))
        expiry = _int(rules, 'discountExpiryHours', 24, minimum=1)
        percentage = _int(widget, 'userPercentage', 100, minimum=0)
        if percentage > 100:
            raise ConfigError('userPercentage must be between 0 and 100')
        minimum_order = rules.get('minimumOrderAmount')
        if minimum_order is not None:
            if isinstance(minimum_order, bool) or not isinstance(minimum_order, (int, float)) or minimum_order < 0:
                raise ConfigError('minimumOrderAmount must be a non-negative number')
            minimum_order = float(minimum_order)

        return cls(
            shop_domain=shop_domain,
            is_enabled=bool(doc.get('isEnabled', True)),
            discount_tiers=tiers,
            min_score_for_discount=_int(game, 'minScoreForDiscount', 0, minimum=0),
            max_plays_per_customer=_int(game, 'maxPlaysPerCustomer', 0, minimum=0),
            max_plays_per_day=_int(game, 'maxPlaysPerDay', 0, minimum=0),
            max_sessions_per_day=_int(game, 'maxSessionsPerDay', 0, minimum=0),
            play_limit_scope=_choice(game, 'playLimitScope', 'daily', LIMIT_SCOPES),
            game_type=str(game.get('gameType') or 'dino'),
            discount_expiry_hours=expiry,
            exclude_discounted_products=bool(rules.get('excludeDiscountedProducts', False)),
            allow_stacking_discounts=bool(rules.get('allowStackingDiscounts', False)),
            minimum_order_amount=minimum_order,
            user_percentage=percentage,
            test_mode=bool(widget.get('testMode', False)),
            trigger_event=_choice(widget, 'triggerEvent', 'immediate', TRIGGER_EVENTS),
            position=_choice(widget, 'position', 'bottom-right', POSITIONS),
            show_on=_choice(widget, 'showOn', 'all_pages', SHOW_ON),
            custom_pages=tuple(str(p) for p in (widget.get('customPages') or []) if p),
            device_targeting=_choice(widget, 'deviceTargeting', 'all', DEVICE_TARGETS),
            time_rules=_time_rules(widget.get('timeBasedRules')),
        )

    def to_public(self) -> dict:
        """Widget-facing view: everything the storefront needs, no credentials."""
        rules = self.time_rules
        return {
            'gameSettings': {
                'isEnabled': self.is_enabled,
                'gameType': self.game_type,
                'minScoreForDiscount': self.min_score_for_discount,
                'maxPlaysPerCustomer': self.max_plays_per_customer,
                'maxPlaysPerDay': self.max_plays_per_day,
                'playLimitScope': self.play_limit_scope,
                'discountTiers': [t.to_dict() for t in self.discount_tiers],
            },
            'widgetSettings': {
                'triggerEvent': self.trigger_event,
                'position': self.position,
                'showOn': self.show_on,
                'customPages': list(self.custom_pages),
                'userPercentage': self.user_percentage,
                'testMode': self.test_mode,
                'deviceTargeting': self.device_targeting,
                'timeBasedRules': {
                    'enabled': rules.enabled,
                    'startTime': _fmt_minute(rules.start_minute),
                    'endTime': _fmt_minute(rules.end_minute),
                    'daysOfWeek': list(rules.days_of_week),
                },
            },
            'businessRules': {
                'excludeDiscountedProducts': self.exclude_discounted_products,
                'allowStackingDiscounts': self.allow_stacking_discounts,
                'discountExpiryHours': self.discount_expiry_hours,
                'minimumOrderAmount': self.minimum_order_amount,
            },
        }


def _section(doc, name):
    value = doc.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f'{name} must be an object')
    return value


def _int(section, key, default, minimum=None):
    value = section.get(key, default)
    if value is None:
        value = default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f'{key} must be an integer')
    if minimum is not None and value < minimum:
        raise ConfigError(f'{key} must be >= {minimum}')
    return value


def _choice(section, key, default, allowed):
    value = section.get(key) or default
    if value not in allowed:
        raise ConfigError(f'{key} must be one of {", ".join(allowed)}')
    return value


def _tiers(raw) -> Tuple[Tier, ...]:
    if not isinstance(raw, list) or not raw:
        raise ConfigError('discountTiers must contain at least one tier')
    tiers = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ConfigError('each discount tier must be an object')
        percent = entry.get('discountPercent', entry.get('discount'))
        min_score = entry.get('minScore')
        for label, value in (('minScore', min_score), ('discount', percent)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f'tier {label} must be an integer')
        if min_score < 0:
            raise ConfigError('tier minScore must be >= 0')
        if not 0 <= percent <= 100:
            raise ConfigError('tier discount must be between 0 and 100')
        tiers.append(Tier(min_score=min_score, discount_percent=percent, message=str(entry.get('message') or '')))
    for prev, cur in zip(tiers, tiers[1:]):
        if cur.min_score <= prev.min_score:
            raise ConfigError('tier minScore values must be strictly increasing')
        if cur.discount_percent < prev.discount_percent:
            raise ConfigError('tier discounts must not decrease as minScore increases')
    return tuple(tiers)


def _parse_minute(value, key):
    if value in (None, ''):
        return None
    match = _HHMM.match(str(value))
    if not match:
        raise ConfigError(f'{key} must use HH:MM')
    return int(match.group(1)) * 60 + int(match.group(2))


def _fmt_minute(minute):
    if minute is None:
        return None
    return f'{minute // 60:02d}:{minute % 60:02d}'


def _time_rules(raw) -> TimeRules:
    if not raw:
        return TimeRules()
    if not isinstance(raw, dict):
        raise ConfigError('timeBasedRules must be an object')
    days = raw.get('daysOfWeek') or []
    if any(isinstance(d, bool) or not isinstance(d, int) or not 0 <= d <= 6 for d in days):
        raise ConfigError('daysOfWeek must hold integers 0-6')
    return TimeRules(
        enabled=bool(raw.get('enabled', False)),
        start_minute=_parse_minute(raw.get('startTime'), 'startTime'),
        end_minute=_parse_minute(raw.get('endTime'), 'endTime'),
        days_of_week=tuple(sorted(set(days))),
    )


class ConfigStore:
    """Reads shop configuration; ``get`` returns None for unknown shops."""

    def get(self, shop_domain: str) -> Optional[ShopConfig]:
        raise NotImplementedError


class SqlConfigStore(ConfigStore):

    def get(self, shop_domain):
        from bargain.models import Shop
        shop = Shop.query.filter_by(shop_domain=shop_domain).first()
        if shop is None:
            return None
        return ShopConfig.from_document(shop_domain, shop.document)

    def save(self, shop_domain, document, access_token=None):
        """Validate then persist a configuration document. Returns the config."""
        from bargain import db
        from bargain.models import Shop
        config = ShopConfig.from_document(shop_domain, document)
        shop = Shop.query.filter_by(shop_domain=shop_domain).first()
        if shop is None:
            shop = Shop(shop_domain=shop_domain)
        body = {k: v for k, v in document.items() if k != 'isEnabled'}
        shop.settings = json.dumps(body)
        shop.is_enabled = config.is_enabled
        if access_token:
            shop.access_token = access_token
        db.session.add(shop)
        db.session.commit()
        return config

    def ensure_default(self, shop_domain):
        """Return the shop's config, creating the default document when absent."""
        config = self.get(shop_domain)
        if config is None:
            config = self.save(shop_domain, default_document())
        return config


class StaticConfigStore(ConfigStore):
    """Dictionary-backed store; documents are validated on every read."""

    def __init__(self, documents=None):
        self.documents = dict(documents or {})

    def get(self, shop_domain):
        doc = self.documents.get(shop_domain)
        if doc is None:
            return None
        return ShopConfig.from_document(shop_domain, doc)
