"""Re-export all models so Base.metadata sees them."""

from stacksgate.db.models.merchant import MerchantRow
from stacksgate.db.models.payment_intent import PaymentEventRow, PaymentIntentRow
from stacksgate.db.models.sbtc_transaction import SBTCTransactionRow
from stacksgate.db.models.webhook_log import WebhookLogRow

__all__ = [
    "MerchantRow",
    "PaymentEventRow",
    "PaymentIntentRow",
    "SBTCTransactionRow",
    "WebhookLogRow",
]
