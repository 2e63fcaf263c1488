import base64
import hashlib
import hmac
import json
from datetime import datetime

import pytest
import requests

from conftest import scenario_document
from bargain.services.play.config import ShopConfig, Tier
from bargain.services.play.errors import IssuerUnavailable
from bargain.services.play.issuer import DiscountIssuer
from bargain.services.play.store import MemoryStore
from bargain.services.commerce import (
    PermanentCommerceError,
    ShopifyClient,
    TransientCommerceError,
    verify_webhook,
)

SHOP = 'api.myshopify.com'


class FakeResponse:

    def __init__(self, status_code, body=None):
        self.status_code = status_code
        self.content = json.dumps(body).encode() if body is not None else b''
        self.text = self.content.decode()

    def json(self):
        return json.loads(self.content)


class FakeHttp:

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        self.requests.append({'method': method, 'url': url, 'json': json, 'headers': headers, 'timeout': timeout})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(*responses, token='shpat_abc'):
    http = FakeHttp(*responses)
    return ShopifyClient(token_lookup=lambda shop: token, api_version='2024-01', timeout=5, http=http), http


def test_create_price_rule_payload():
    client, http = _client(FakeResponse(201, {'price_rule': {'id': 555}}))
    rule_id = client.create_price_rule(
        SHOP, 'BARGAIN0A1B2C3D', 15, datetime(2026, 3, 10, 12, 0), datetime(2026, 3, 11, 12, 0),
        minimum_order_amount=25,
    )
    assert rule_id == '555'
    sent = http.requests[0]
    assert sent['url'] == f'https://{SHOP}/admin/api/2024-01/price_rules.json'
    assert sent['headers']['X-Shopify-Access-Token'] == 'shpat_abc'
    assert sent['timeout'] == 5
    rule = sent['json']['price_rule']
    assert rule['value_type'] == 'percentage'
    assert rule['value'] == '-15'
    assert rule['usage_limit'] == 1
    assert rule['ends_at'] == '2026-03-11T12:00:00Z'
    assert rule['prerequisite_subtotal_range'] == {'greater_than_or_equal_to': '25.00'}


def test_create_discount_code():
    client, http = _client(FakeResponse(201, {'discount_code': {'id': 9, 'code': 'BARGAIN0A1B2C3D'}}))
    assert client.create_discount_code(SHOP, '555', 'BARGAIN0A1B2C3D') == '9'
    assert http.requests[0]['url'].endswith('/price_rules/555/discount_codes.json')


@pytest.mark.parametrize('response,expected', [
    (FakeResponse(429), TransientCommerceError),
    (FakeResponse(502), TransientCommerceError),
    (requests.ConnectionError('reset'), TransientCommerceError),
    (FakeResponse(422, {'errors': 'bad'}), PermanentCommerceError),
    (FakeResponse(401), PermanentCommerceError),
])
def test_failures_are_classified(response, expected):
    client, _ = _client(response)
    with pytest.raises(expected):
        client.create_price_rule(SHOP, 'BARGAIN00000000', 5, datetime(2026, 1, 1), datetime(2026, 1, 2))


def test_missing_token_is_permanent():
    client, http = _client(token=None)
    with pytest.raises(PermanentCommerceError):
        client.create_discount_code(SHOP, '1', 'BARGAIN00000000')
    assert http.requests == []


def test_verify_webhook():
    body = b'{"id": 1}'
    digest = base64.b64encode(hmac.new(b'secret', body, hashlib.sha256).digest()).decode()
    assert verify_webhook(body, digest, 'secret')
    assert not verify_webhook(body, digest, 'other')
    assert not verify_webhook(body, None, 'secret')
    assert not verify_webhook(body, digest, '')


class RawResponse(FakeResponse):

    def __init__(self, status_code, raw):
        super().__init__(status_code)
        self.content = raw
        self.text = raw.decode()


@pytest.mark.parametrize('response', [
    RawResponse(201, b'<html>created</html>'),
    FakeResponse(201, {'unexpected': True}),
])
def test_unreadable_success_is_permanent(response):
    client, _ = _client(response)
    with pytest.raises(PermanentCommerceError):
        client.create_price_rule(SHOP, 'BARGAIN00000000', 5, datetime(2026, 1, 1), datetime(2026, 1, 2))


def test_unreadable_success_is_not_posted_twice():
    client, http = _client(RawResponse(201, b'<html>created</html>'), FakeResponse(201, {'price_rule': {'id': 2}}))
    issuer = DiscountIssuer(MemoryStore(), client, sleep=lambda _: None)
    config = ShopConfig.from_document(SHOP, scenario_document())
    with pytest.raises(IssuerUnavailable):
        issuer.issue(SHOP, Tier(100, 10, 'Ten off!'), 's-1', datetime(2026, 3, 10, 12, 0), config)
    assert [r['method'] for r in http.requests] == ['POST']
