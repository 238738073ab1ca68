from datetime import datetime, timezone

import pytest

from pos_discounts.config import Settings
from pos_discounts.logic import build_line
from pos_discounts.models import DiscountRule, DiscountScope, DiscountType, ItemMatch

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_rule(code="SAVE10", type="percent", scope="order", value=10, **kwargs) -> DiscountRule:
    return DiscountRule(
        id=kwargs.pop("id", code.lower()),
        code=code,
        type=DiscountType(type),
        scope=DiscountScope(scope),
        value=value,
        **kwargs,
    )


def item_rule(code, tokens=(), sku=None, **kwargs) -> DiscountRule:
    return make_rule(code, scope="item", itemMatch=ItemMatch(tokens=list(tokens), sku=sku), **kwargs)


def cart_of(total: float):
    return [build_line("p1", "Basmati Rice 5kg", 1, total)]


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def grocery_cart():
    # subtotal 500
    return [
        build_line("p1", "Basmati Rice 5kg", 2, 100, taxPercent=5, sku="RICE-5"),
        build_line("p2", "Whole Milk 1L", 10, 20, sku="MILK-1"),
        build_line("p3", "Olive Oil", 1, 100),
    ]


@pytest.fixture
def settings():
    return Settings(api_base="http://rules.test", auth_token="secret", vat_percent=5)
