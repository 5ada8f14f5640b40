import pytest

from app.core.config import get_settings
from app.services.plan_catalog import (
    UNLIMITED, get_plan, is_limit_reached, is_paid_plan, list_plans,
    plan_for_provider_price, provider_price_id, usage_percentage,
)


def test_catalog_limits():
    assert [p.id for p in list_plans()] == ["free", "starter", "professional", "business"]
    starter = get_plan("starter")
    assert starter.limit_for("conversations") == 500
    assert starter.limit_for("websites") == 1
    assert starter.limit_for("chatbots") == 2
    assert get_plan("business").limit_for("conversations") == 10000


def test_unknown_plan_falls_back_to_free():
    assert get_plan("enterprise-gold").id == "free"
    assert get_plan(None).id == "free"


def test_unknown_metric_rejected():
    with pytest.raises(ValueError):
        get_plan("starter").limit_for("minutes")


def test_paid_plans():
    assert not is_paid_plan("free")
    assert is_paid_plan("professional")
    assert not is_paid_plan("nope")


def test_limit_helpers():
    assert is_limit_reached(500, 500)
    assert not is_limit_reached(499, 500)
    assert not is_limit_reached(10 ** 9, UNLIMITED)
    assert usage_percentage(400, 500) == 80.0
    assert usage_percentage(900, 500) == 100.0
    assert usage_percentage(5, UNLIMITED) == 0.0


def test_provider_price_mapping(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "STRIPE_PRICE_PROFESSIONAL", "price_pro")
    monkeypatch.setattr(settings, "POLAR_PRODUCT_STARTER", "prod_starter")

    assert provider_price_id("stripe", "professional") == "price_pro"
    assert plan_for_provider_price("stripe", "price_pro") == "professional"
    assert plan_for_provider_price("polar", "prod_starter") == "starter"
    assert plan_for_provider_price("polar", "price_pro") is None
    assert plan_for_provider_price("stripe", None) is None
