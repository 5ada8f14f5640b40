"""
PlanCatalog — static plan table (plan id → quotas and feature flags).

Usage:
    plan = get_plan("starter")
    limit = plan.limit_for("conversations")   # 500
"""
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional

from app.core.config import get_settings

UNLIMITED = -1

METRIC_CONVERSATIONS = "conversations"
METRIC_WEBSITES = "websites"
METRIC_CHATBOTS = "chatbots"
METRICS = (METRIC_CONVERSATIONS, METRIC_WEBSITES, METRIC_CHATBOTS)

DEFAULT_PLAN_ID = "free"


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price_cents: int
    monthly_conversation_limit: int
    website_limit: int
    chatbot_limit: int
    features: FrozenSet[str] = field(default_factory=frozenset)

    def limit_for(self, metric: str) -> int:
        if metric == METRIC_CONVERSATIONS:
            return self.monthly_conversation_limit
        if metric == METRIC_WEBSITES:
            return self.website_limit
        if metric == METRIC_CHATBOTS:
            return self.chatbot_limit
        raise ValueError(f"Unknown metric '{metric}'")

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "price_cents": self.price_cents,
            "monthly_conversation_limit": self.monthly_conversation_limit,
            "website_limit": self.website_limit,
            "chatbot_limit": self.chatbot_limit,
            "features": sorted(self.features),
        }


# ---------------------------------------------------------------------------
# Plans catalog (ordered from lowest to highest tier)
# ---------------------------------------------------------------------------

PLANS_CATALOG: List[Plan] = [
    Plan(
        id="free",
        name="Free Trial",
        price_cents=0,
        monthly_conversation_limit=100,
        website_limit=1,
        chatbot_limit=1,
        features=frozenset({"email_support"}),
    ),
    Plan(
        id="starter",
        name="Starter",
        price_cents=2900,
        monthly_conversation_limit=500,
        website_limit=1,
        chatbot_limit=2,
        features=frozenset({"email_support", "custom_branding", "priority_support", "advanced_analytics"}),
    ),
    Plan(
        id="professional",
        name="Professional",
        price_cents=7900,
        monthly_conversation_limit=2000,
        website_limit=3,
        chatbot_limit=5,
        features=frozenset({
            "email_support", "custom_branding", "priority_support", "advanced_analytics",
            "api_access", "custom_integrations",
        }),
    ),
    Plan(
        id="business",
        name="Business",
        price_cents=19900,
        monthly_conversation_limit=10000,
        website_limit=10,
        chatbot_limit=20,
        features=frozenset({
            "email_support", "custom_branding", "priority_support", "advanced_analytics",
            "api_access", "custom_integrations", "white_label", "sla",
        }),
    ),
]

PLANS: Dict[str, Plan] = {plan.id: plan for plan in PLANS_CATALOG}


def get_plan(plan_id: Optional[str]) -> Plan:
    """Plan by id; unknown ids fall back to the free plan."""
    return PLANS.get(plan_id or DEFAULT_PLAN_ID, PLANS[DEFAULT_PLAN_ID])


def is_known_plan(plan_id: Optional[str]) -> bool:
    return plan_id in PLANS


def is_paid_plan(plan_id: Optional[str]) -> bool:
    return is_known_plan(plan_id) and PLANS[plan_id].price_cents > 0


def list_plans() -> List[Plan]:
    return list(PLANS_CATALOG)


def is_limit_reached(used: int, limit: int) -> bool:
    if limit == UNLIMITED:
        return False
    return used >= limit


def usage_percentage(used: int, limit: int) -> float:
    if limit == UNLIMITED or limit <= 0:
        return 0.0
    return min(used / limit * 100, 100.0)


def _provider_price_ids() -> Dict[str, Dict[str, Optional[str]]]:
    settings = get_settings()
    return {
        "stripe": {
            "starter": settings.STRIPE_PRICE_STARTER,
            "professional": settings.STRIPE_PRICE_PROFESSIONAL,
            "business": settings.STRIPE_PRICE_BUSINESS,
        },
        "polar": {
            "starter": settings.POLAR_PRODUCT_STARTER,
            "professional": settings.POLAR_PRODUCT_PROFESSIONAL,
            "business": settings.POLAR_PRODUCT_BUSINESS,
        },
    }


def provider_price_id(provider: str, plan_id: str) -> Optional[str]:
    """Stripe price id / Polar product id configured for a plan."""
    return _provider_price_ids().get(provider, {}).get(plan_id)


def plan_for_provider_price(provider: str, price_id: Optional[str]) -> Optional[str]:
    """Reverse lookup: provider price/product id → plan id (None if not configured)."""
    if not price_id:
        return None
    for plan_id, configured in _provider_price_ids().get(provider, {}).items():
        if configured and configured == price_id:
            return plan_id
    return None
