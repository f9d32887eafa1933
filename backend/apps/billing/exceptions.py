"""
Billing-specific exceptions.

Guard violations and payment validation errors propagate to the caller.
Stripe's own StripeError hierarchy is the remote failure taxonomy and is
not wrapped.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from apps.billing.models import Subscription
    from apps.billing.payment import Payment
    from apps.organizations.models import Organization


class BillingError(Exception):
    """Base exception for billing errors."""

    pass


class SubscriptionUpdateFailure(BillingError):
    """Raised when a subscription change is refused by a guard."""

    INCOMPLETE = "incomplete"
    DUPLICATE_PLAN = "duplicate_plan"
    CANNOT_DELETE_LAST_PLAN = "cannot_delete_last_plan"

    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason

    @classmethod
    def incomplete_subscription(cls, subscription: Subscription) -> SubscriptionUpdateFailure:
        return cls(
            f'The subscription "{subscription.stripe_subscription_id}" cannot be updated '
            "because its payment is incomplete.",
            cls.INCOMPLETE,
        )

    @classmethod
    def duplicate_plan(cls, subscription: Subscription, plan: str) -> SubscriptionUpdateFailure:
        return cls(
            f'The plan "{plan}" is already attached to subscription '
            f'"{subscription.stripe_subscription_id}".',
            cls.DUPLICATE_PLAN,
        )

    @classmethod
    def cannot_delete_last_plan(cls, subscription: Subscription) -> SubscriptionUpdateFailure:
        return cls(
            f'The plan on subscription "{subscription.stripe_subscription_id}" cannot be '
            "removed because it is the last one.",
            cls.CANNOT_DELETE_LAST_PLAN,
        )


class IncompletePaymentError(BillingError):
    """Raised when a payment did not succeed; carries the payment result."""

    def __init__(self, payment: Payment, message: str = ""):
        super().__init__(message)
        self.payment = payment


class PaymentActionRequiredError(IncompletePaymentError):
    """The payment needs an extra customer action such as 3D Secure."""

    @classmethod
    def incomplete(cls, payment: Payment) -> PaymentActionRequiredError:
        return cls(
            payment,
            "The payment attempt failed because additional action is required "
            "before it can be completed.",
        )


class PaymentFailureError(IncompletePaymentError):
    """The payment needs a new payment method."""

    @classmethod
    def invalid_payment_method(cls, payment: Payment) -> PaymentFailureError:
        return cls(
            payment,
            "The payment attempt failed because of an invalid payment method.",
        )


class CustomerAlreadyCreatedError(BillingError):
    """Raised when creating a Stripe customer for an org that already has one."""

    @classmethod
    def exists(cls, owner: Organization) -> CustomerAlreadyCreatedError:
        return cls(
            f"Organization {owner.pk} is already a Stripe customer with ID "
            f"{owner.stripe_customer_id}."
        )


class InvalidCustomerError(BillingError):
    """Raised when an operation needs a Stripe customer the org doesn't have yet."""

    @classmethod
    def not_yet_created(cls, owner: Organization) -> InvalidCustomerError:
        return cls(
            f"Organization {owner.pk} is not a Stripe customer yet. "
            "See create_as_stripe_customer."
        )


class InvalidPaymentMethodError(BillingError):
    """Raised when a payment method belongs to a different customer."""

    @classmethod
    def invalid_owner(cls, payment_method_id: str, owner: Organization) -> InvalidPaymentMethodError:
        return cls(
            f"The payment method `{payment_method_id}` does not belong to this customer "
            f"`{owner.stripe_customer_id}`."
        )


class InvalidInvoiceError(BillingError):
    """Raised when an invoice belongs to a different customer."""

    @classmethod
    def invalid_owner(cls, invoice_id: str, owner: Organization) -> InvalidInvoiceError:
        return cls(
            f"The invoice `{invoice_id}` does not belong to this customer "
            f"`{owner.stripe_customer_id}`."
        )


class MalformedEventError(BillingError):
    """Raised when a webhook payload doesn't decode into the expected shape."""

    pass
