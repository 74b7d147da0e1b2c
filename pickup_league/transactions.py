"""Derive a Buy/Sell order's transaction status from its stored fields."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import TransactionStatus

if TYPE_CHECKING:
    from .models import BuySell


def classify(buy_sell: "BuySell") -> TransactionStatus:
    """Return the status implied by the buyer/seller ids and payment flags.

    The status is never stored, so it is recomputed on every read.
    """

    has_buyer = buy_sell.buyer_user_id is not None
    has_seller = buy_sell.seller_user_id is not None

    if has_buyer and not has_seller:
        return TransactionStatus.LOOKING_TO_BUY
    if has_seller and not has_buyer:
        return TransactionStatus.AVAILABLE_TO_BUY
    if has_buyer and has_seller:
        if buy_sell.payment_sent and buy_sell.payment_received:
            return TransactionStatus.COMPLETE
        if buy_sell.payment_sent:
            return TransactionStatus.PAYMENT_SENT
        return TransactionStatus.PAYMENT_PENDING
    return TransactionStatus.UNKNOWN


__all__ = ["classify"]
