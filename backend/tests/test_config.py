import pytest

from bargain.services.play.config import ShopConfig, StaticConfigStore, default_document
from bargain.services.play.errors import ConfigError


def _doc(**tiers_or_sections):
    doc = default_document()
    for section, values in tiers_or_sections.items():
        doc[section].update(values)
    return doc


def test_default_document_is_valid():
    config = ShopConfig.from_document('a.myshopify.com', default_document())
    assert config.is_enabled
    assert config.min_score_for_discount == 150
    assert [t.discount_percent for t in config.discount_tiers] == [0, 5, 10, 15, 20, 25]
    assert config.discount_expiry_hours == 24


def test_discount_percent_key_is_accepted():
    doc = _doc(gameSettings={'discountTiers': [{'minScore': 10, 'discountPercent': 7}]})
    config = ShopConfig.from_document('a.myshopify.com', doc)
    assert config.discount_tiers[0].discount_percent == 7


@pytest.mark.parametrize('tiers', [
    [],
    [{'minScore': 100, 'discount': 10}, {'minScore': 100, 'discount': 20}],
    [{'minScore': 300, 'discount': 10}, {'minScore': 100, 'discount': 20}],
    [{'minScore': 100, 'discount': 20}, {'minScore': 300, 'discount': 10}],
    [{'minScore': 100, 'discount': 120}],
    [{'minScore': -1, 'discount': 5}],
    [{'minScore': '100', 'discount': 5}],
])
def test_malformed_tier_tables_are_rejected(tiers):
    with pytest.raises(ConfigError):
        ShopConfig.from_document('a.myshopify.com', _doc(gameSettings={'discountTiers': tiers}))


@pytest.mark.parametrize('section,values', [
    ('businessRules', {'discountExpiryHours': 0}),
    ('widgetSettings', {'userPercentage': 101}),
    ('widgetSettings', {'showOn': 'everywhere'}),
    ('widgetSettings', {'deviceTargeting': 'watch'}),
    ('widgetSettings', {'timeBasedRules': {'enabled': True, 'startTime': '25:00'}}),
    ('gameSettings', {'playLimitScope': 'weekly'}),
])
def test_invalid_settings_are_rejected(section, values):
    with pytest.raises(ConfigError):
        ShopConfig.from_document('a.myshopify.com', _doc(**{section: values}))


def test_corrupt_document_is_rejected():
    with pytest.raises(ConfigError):
        ShopConfig.from_document('a.myshopify.com', {'_corrupt': '{not json'})


def test_public_view_round_trips_through_validation():
    config = ShopConfig.from_document('a.myshopify.com', default_document())
    public = config.to_public()
    again = ShopConfig.from_document('a.myshopify.com', dict(public, isEnabled=True))
    assert again.discount_tiers == config.discount_tiers
    assert 'accessToken' not in str(public)


def test_static_store_returns_none_for_unknown_shop():
    assert StaticConfigStore({}).get('missing.myshopify.com') is None


def test_sql_store_persists_enabled_flag(flask_app):
    from bargain.models import Shop
    from bargain.services.play.config import SqlConfigStore
    doc = default_document()
    doc['isEnabled'] = False
    SqlConfigStore().save('b.myshopify.com', doc, access_token='tok')
    shop = Shop.query.filter_by(shop_domain='b.myshopify.com').first()
    assert shop.is_enabled is False
    assert shop.access_token == 'tok'
    assert 'isEnabled' not in shop.settings
    assert SqlConfigStore().get('b.myshopify.com').is_enabled is False
