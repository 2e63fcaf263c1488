import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .config import ConfigStore, ShopConfig
from .errors import ConfigError


log = logging.getLogger(__name__)

_MOBILE = re.compile(r'mobile|android|iphone|ipad|phone', re.I)
_TABLET = re.compile(r'tablet|ipad', re.I)


@dataclass(frozen=True)
class VisitorContext:
    shop_domain: str
    visitor_id: str
    path: str = '/'
    user_agent: str = ''
    device: Optional[str] = None  # overrides user-agent sniffing when given
    event: Optional[str] = None
    now: Optional[datetime] = None


def device_class(user_agent: str) -> str:
    ua = user_agent or ''
    if _TABLET.search(ua) and not re.search(r'mobile', ua, re.I):
        return 'tablet'
    if _MOBILE.search(ua):
        return 'mobile'
    return 'desktop'


def rollout_bucket(shop_domain: str, visitor_id: str) -> int:
    """Stable 0-99 bucket for a visitor within a shop."""
    digest = hashlib.sha256(f'{shop_domain}:{visitor_id}'.encode('utf-8')).digest()
    return int.from_bytes(digest[:8], 'big') % 100


def page_matches(config: ShopConfig, path: str) -> bool:
    path = path or '/'
    show_on = config.show_on
    if show_on == 'homepage':
        return path in ('', '/')
    if show_on == 'product_pages':
        return '/products/' in path
    if show_on == 'collection_pages':
        return '/collections/' in path
    if show_on == 'cart_page':
        return '/cart' in path
    if show_on == 'checkout_page':
        return '/checkout' in path
    if show_on == 'custom':
        return any(page in path for page in config.custom_pages)
    return True


def time_allows(config: ShopConfig, now: Optional[datetime]) -> bool:
    rules = config.time_rules
    if not rules.enabled or now is None:
        return True
    # isoweekday: Monday=1..Sunday=7; rules count Sunday as 0
    weekday = now.isoweekday() % 7
    if rules.days_of_week and weekday not in rules.days_of_week:
        return False
    if rules.start_minute is not None and rules.end_minute is not None:
        minute = now.hour * 60 + now.minute
        if rules.start_minute <= rules.end_minute:
            return rules.start_minute <= minute <= rules.end_minute
        # Overnight window, e.g. 22:00-06:00
        return minute >= rules.start_minute or minute <= rules.end_minute
    return True


def should_offer(config: ShopConfig, context: VisitorContext) -> bool:
    """Decide whether the storefront should offer the game to this visitor.

    Pure function of the config and the visitor context. Test mode skips
    only the rollout percentage so merchants can check their targeting.
    """
    if not config.is_enabled:
        return False
    if not config.test_mode:
        if rollout_bucket(config.shop_domain, context.visitor_id) >= config.user_percentage:
            return False
    if config.device_targeting != 'all':
        device = context.device or device_class(context.user_agent)
        if device != config.device_targeting:
            return False
    if context.event and context.event != config.trigger_event:
        return False
    if not time_allows(config, context.now):
        return False
    return page_matches(config, context.path)


def offer_for_shop(configs: ConfigStore, context: VisitorContext) -> bool:
    """Load the shop config and evaluate the gate, failing closed."""
    try:
        config = configs.get(context.shop_domain)
    except ConfigError as exc:
        log.warning(f"[offer] shop={context.shop_domain} config rejected: {exc.message}")
        return False
    if config is None:
        return False
    return should_offer(config, context)
