from .subscription import Subscription, SubscriptionAudit, Base, SUBSCRIPTION_STATUSES
from .usage_counter import UsageCounter
from .applied_event import AppliedEvent
from .checkout_session import CheckoutSession
from .billing_history import BillingHistory
from .resources import Website, Chatbot
from .global_api_key import GlobalApiKey
