from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

PENDING = 'pending'
COMPLETED = 'completed'
EXPIRED = 'expired'
ABANDONED = 'abandoned'

# Issuance progress of a completed session's reward
ISSUANCE_NONE = 'none'
ISSUANCE_PENDING = 'pending'
ISSUANCE_ISSUED = 'issued'
ISSUANCE_FAILED = 'failed'

# Discount registration with the commerce platform
CODE_PENDING = 'pending'
CODE_ACTIVE = 'active'
CODE_FAILED = 'failed'

SHOP_WIDE = '*'
LIFETIME = 'lifetime'


@dataclass
class PlaySession:
    session_id: str
    shop_domain: str
    created_at: datetime
    state: str = PENDING
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    customer_key: Optional[str] = None
    source: Optional[str] = None
    referrer: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    completed_at: Optional[datetime] = None
    final_score: Optional[int] = None
    discount_percent: int = 0
    discount_code: Optional[str] = None
    issuance: str = ISSUANCE_NONE
    telemetry: dict = field(default_factory=dict)


@dataclass
class DiscountCode:
    code: str
    shop_domain: str
    session_id: str
    percent: int
    tier_min_score: int
    expires_at: datetime
    created_at: datetime
    status: str = CODE_PENDING
    price_rule_id: Optional[str] = None
    platform_discount_id: Optional[str] = None
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    is_used: bool = False
    used_at: Optional[datetime] = None
    order_id: Optional[str] = None

    def is_usable(self, now: datetime) -> bool:
        """Expired codes are unusable whatever ``is_used`` says."""
        return self.status == CODE_ACTIVE and not self.is_used and self.expires_at > now

    def unusable_reason(self, now: datetime) -> Optional[str]:
        if self.status != CODE_ACTIVE:
            return 'inactive'
        if self.expires_at <= now:
            return 'expired'
        if self.is_used:
            return 'used'
        return None


@dataclass(frozen=True)
class CounterLimit:
    """One play counter to bump, with its cap (0 means uncapped)."""
    shop_domain: str
    customer_key: str
    period: str
    limit: int = 0
