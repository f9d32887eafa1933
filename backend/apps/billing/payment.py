"""
Payment result - the outcome of one payment intent.

`Payment.validate()` is the single place that decides whether a payment
succeeded enough to proceed. Subscription creation, swaps and one-off
charges all call it.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from apps.billing.exceptions import MalformedEventError, PaymentActionRequiredError, PaymentFailureError


@dataclass(frozen=True)
class Payment:
    """Immutable projection of a Stripe PaymentIntent."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_ACTION = "requires_action"
    CANCELED = "canceled"
    SUCCEEDED = "succeeded"

    id: str
    raw_amount: int
    currency: str
    status: str
    client_secret: str | None = None
    # Status of the subscription the intent's invoice belongs to, when expanded
    subscription_status: str | None = None

    @classmethod
    def from_stripe(cls, payment_intent: Mapping[str, Any]) -> "Payment":
        """Decode the fields we use from a PaymentIntent object."""
        if not isinstance(payment_intent, Mapping):
            raise MalformedEventError("Payment intent is not an object")

        subscription_status = None
        invoice = payment_intent.get("invoice")
        if isinstance(invoice, Mapping):
            subscription = invoice.get("subscription")
            if isinstance(subscription, Mapping):
                subscription_status = subscription.get("status")

        try:
            return cls(
                id=payment_intent["id"],
                raw_amount=int(payment_intent.get("amount") or 0),
                currency=payment_intent.get("currency") or "",
                status=payment_intent.get("status") or "",
                client_secret=payment_intent.get("client_secret"),
                subscription_status=subscription_status,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedEventError(f"Invalid payment intent: {e}") from e

    @property
    def requires_payment_method(self) -> bool:
        return self.status == self.REQUIRES_PAYMENT_METHOD

    @property
    def requires_action(self) -> bool:
        """Whether the payment needs an extra action like 3D Secure."""
        return self.status == self.REQUIRES_ACTION

    @property
    def is_canceled(self) -> bool:
        return self.status == self.CANCELED

    @property
    def is_succeeded(self) -> bool:
        return self.status == self.SUCCEEDED

    def validate(self) -> None:
        """
        Raise if the payment needs a new method or a customer action.

        Raises:
            PaymentFailureError: The payment method was declined or is missing
            PaymentActionRequiredError: The customer must confirm the payment
        """
        if self.requires_payment_method:
            raise PaymentFailureError.invalid_payment_method(self)

        if self.requires_action:
            raise PaymentActionRequiredError.incomplete(self)
