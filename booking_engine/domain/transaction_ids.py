# booking_engine/domain/transaction_ids.py

from datetime import datetime
from enum import Enum


class TransactionPrefix(str, Enum):
    GATEWAY = "TXN"
    STRIPE_INTENT = "STRIPE"
    STRIPE_CHECKOUT = "STRIPE-CHECKOUT"
    FREE = "FREE"


def generate_transaction_id(
    prefix: TransactionPrefix,
    entity_id: str,
    now: datetime,
) -> str:
    """
    {PREFIX}-{epoch millis}-{last 6 chars of the booking id}.
    Uniqueness is enforced by the payments.transaction_id constraint.
    """
    millis = int(now.timestamp() * 1000)
    return f"{prefix.value}-{millis}-{entity_id[-6:]}"
