"""Commerce platform client (Shopify Admin REST API).

Only the calls the discount issuer needs: create a price rule, attach a
discount code to it, delete an orphaned price rule. Failures are sorted into
transient (worth retrying) and permanent ones; retry policy lives with the
issuer, not here.
"""
import base64
import hashlib
import hmac
from datetime import datetime
from typing import Callable, Optional

import requests


class CommerceError(Exception):
    transient = False

    def __init__(self, message, status=None):
        super().__init__(message)
        self.status = status


class TransientCommerceError(CommerceError):
    """Network failure, throttling or 5xx: safe to retry."""
    transient = True


class PermanentCommerceError(CommerceError):
    """Rejected request, missing credentials or an unreadable 2xx reply: do not retry."""


class CommercePlatform:

    def create_price_rule(self, shop_domain: str, code: str, percent: int, starts_at: datetime,
                          ends_at: datetime, minimum_order_amount: Optional[float] = None) -> str:
        raise NotImplementedError

    def create_discount_code(self, shop_domain: str, price_rule_id: str, code: str) -> str:
        raise NotImplementedError

    def delete_price_rule(self, shop_domain: str, price_rule_id: str) -> None:
        raise NotImplementedError


def _iso(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + 'Z'


class ShopifyClient(CommercePlatform):

    def __init__(self, token_lookup: Callable[[str], Optional[str]], api_version='2024-01', timeout=10, http=None):
        self.token_lookup = token_lookup
        self.api_version = api_version
        self.timeout = timeout
        self.http = http or requests.Session()

    def _request(self, method, shop_domain, path, payload=None):
        token = self.token_lookup(shop_domain)
        if not token:
            raise PermanentCommerceError(f'no access token stored for {shop_domain}')
        url = f'https://{shop_domain}/admin/api/{self.api_version}/{path}'
        try:
            resp = self.http.request(
                method,
                url,
                json=payload,
                headers={'X-Shopify-Access-Token': token, 'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise TransientCommerceError(f'{method} {path} failed: {exc}') from exc
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientCommerceError(f'{method} {path} returned {resp.status_code}', status=resp.status_code)
        if resp.status_code >= 400:
            raise PermanentCommerceError(f'{method} {path} returned {resp.status_code}: {resp.text[:200]}',
                                         status=resp.status_code)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            # The write may have gone through; retrying could duplicate it
            raise PermanentCommerceError(f'{method} {path} returned a non-JSON body',
                                         status=resp.status_code) from exc

    def create_price_rule(self, shop_domain, code, percent, starts_at, ends_at, minimum_order_amount=None):
        rule = {
            'title': f'Bargain Hunter - {code}',
            'target_type': 'line_item',
            'target_selection': 'all',
            'allocation_method': 'across',
            'value_type': 'percentage',
            'value': f'-{percent}',
            'customer_selection': 'all',
            'usage_limit': 1,
            'once_per_customer': True,
            'starts_at': _iso(starts_at),
            'ends_at': _iso(ends_at),
        }
        if minimum_order_amount:
            rule['prerequisite_subtotal_range'] = {'greater_than_or_equal_to': f'{minimum_order_amount:.2f}'}
        body = self._request('POST', shop_domain, 'price_rules.json', {'price_rule': rule})
        try:
            return str(body['price_rule']['id'])
        except (KeyError, TypeError) as exc:
            raise PermanentCommerceError('price rule response missing id') from exc

    def create_discount_code(self, shop_domain, price_rule_id, code):
        body = self._request(
            'POST', shop_domain, f'price_rules/{price_rule_id}/discount_codes.json',
            {'discount_code': {'code': code}},
        )
        try:
            return str(body['discount_code']['id'])
        except (KeyError, TypeError) as exc:
            raise PermanentCommerceError('discount code response missing id') from exc

    def delete_price_rule(self, shop_domain, price_rule_id):
        self._request('DELETE', shop_domain, f'price_rules/{price_rule_id}.json')


def lookup_access_token(shop_domain: str) -> Optional[str]:
    from bargain.models import Shop
    shop = Shop.query.filter_by(shop_domain=shop_domain).first()
    return shop.access_token if shop else None


def verify_webhook(raw_body: bytes, hmac_header: Optional[str], secret: str) -> bool:
    """Check the base64 HMAC-SHA256 the platform sends with each webhook."""
    if not secret or not hmac_header:
        return False
    digest = hmac.new(secret.encode('utf-8'), raw_body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode('ascii')
    return hmac.compare_digest(expected, hmac_header.strip())
