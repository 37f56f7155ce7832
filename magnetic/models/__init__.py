from magnetic.models.user import User
from magnetic.models.plan import Plan
from magnetic.models.credit_package import CreditPackage
from magnetic.models.credit_balance import CreditBalance
from magnetic.models.credit_transaction import CreditTransaction
from magnetic.models.credit_subscription import CreditSubscription
from magnetic.models.credit_purchase import CreditPurchase
from magnetic.models.agent import Agent
from magnetic.models.chat_message import ChatMessage
from magnetic.models.webhook_log import WebhookLog
from magnetic.models.webhook_event import WebhookEvent
from magnetic.models.audit_log import AuditLog
from magnetic.models.failed_job import FailedJob

__all__ = [
    "User",
    "Plan",
    "CreditPackage",
    "CreditBalance",
    "CreditTransaction",
    "CreditSubscription",
    "CreditPurchase",
    "Agent",
    "ChatMessage",
    "WebhookLog",
    "WebhookEvent",
    "AuditLog",
    "FailedJob",
]
