"""
Proration and payment-behavior modifiers shared by the engine, the item
engine and the builder.
"""

from enum import StrEnum
from typing import Self


class ProrationBehavior(StrEnum):
    NONE = "none"
    CREATE_PRORATIONS = "create_prorations"
    ALWAYS_INVOICE = "always_invoice"


class PaymentBehavior(StrEnum):
    ALLOW_INCOMPLETE = "allow_incomplete"
    PENDING_IF_INCOMPLETE = "pending_if_incomplete"
    ERROR_IF_INCOMPLETE = "error_if_incomplete"


class ChangeBehaviorMixin:
    """
    Chainable per-call-chain state consumed by every remote mutation.

    Usage:
        SubscriptionEngine(sub).no_prorate().error_if_payment_fails().swap(["price_pro"])
    """

    proration_behavior: ProrationBehavior = ProrationBehavior.CREATE_PRORATIONS
    payment_behavior: PaymentBehavior = PaymentBehavior.ALLOW_INCOMPLETE

    def no_prorate(self) -> Self:
        self.proration_behavior = ProrationBehavior.NONE
        return self

    def prorate(self) -> Self:
        self.proration_behavior = ProrationBehavior.CREATE_PRORATIONS
        return self

    def always_invoice(self) -> Self:
        self.proration_behavior = ProrationBehavior.ALWAYS_INVOICE
        return self

    def set_proration_behavior(self, value: ProrationBehavior | str) -> Self:
        self.proration_behavior = ProrationBehavior(value)
        return self

    def allow_payment_failures(self) -> Self:
        self.payment_behavior = PaymentBehavior.ALLOW_INCOMPLETE
        return self

    def pending_if_payment_fails(self) -> Self:
        self.payment_behavior = PaymentBehavior.PENDING_IF_INCOMPLETE
        return self

    def error_if_payment_fails(self) -> Self:
        self.payment_behavior = PaymentBehavior.ERROR_IF_INCOMPLETE
        return self
