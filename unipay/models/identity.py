"""
Transaction identity models - Immutable dataclasses.

NO DICTIONARIES - All data uses strongly typed models.

A gateway transaction is identified by its current trade number. Renewals
of a subscription additionally carry the trade number of the first
purchase in the chain, which is what continuity checks compare against.
"""

from dataclasses import dataclass
from enum import Enum

from unipay.exceptions import MalformedOrderIdError

# Play Store renewals append "..N" to the original order id:
# GPA.1234-5678-9012-34567 -> GPA.1234-5678-9012-34567..0 -> ..1
PLAY_RENEWAL_SEPARATOR = ".."


class PayWay(str, Enum):
    """Payment gateway a transaction came through."""

    APP_STORE = "app_store"
    PLAY_STORE = "play_store"
    ALIPAY = "alipay"
    WECHAT = "wechat"
    PAYPAL = "paypal"


@dataclass(frozen=True)
class TransactionIdentity:
    """Canonical identity of one gateway transaction."""

    trade_no: str
    original_trade_no: str
    product_id: str
    pay_way: PayWay

    def __post_init__(self) -> None:
        """Validate identity fields."""
        if not self.trade_no:
            raise ValueError("trade_no cannot be empty")
        if not self.original_trade_no:
            raise ValueError("original_trade_no cannot be empty")

    @property
    def is_first_purchase(self) -> bool:
        """True for the first transaction of a subscription chain."""
        return self.trade_no == self.original_trade_no

    @property
    def is_renewal(self) -> bool:
        return not self.is_first_purchase


def split_play_order_id(order_id: str) -> str:
    """
    Return the original order id for a Play Store order id.

    Args:
        order_id: Order id as reported by Google Play

    Returns:
        The order id of the first purchase in the renewal chain

    Raises:
        MalformedOrderIdError: Empty id, or more than one renewal separator
    """
    if not order_id:
        raise MalformedOrderIdError(order_id)

    segments = order_id.split(PLAY_RENEWAL_SEPARATOR)
    if len(segments) == 1:
        return order_id
    if len(segments) == 2 and segments[0]:
        return segments[0]

    # Never observed from Google; refuse instead of guessing the chain origin.
    raise MalformedOrderIdError(order_id)


def resolve_app_store_original(transaction_id: str, original_transaction_id: str | None) -> str:
    """Original transaction id, falling back to the transaction itself when absent."""
    return original_transaction_id or transaction_id
