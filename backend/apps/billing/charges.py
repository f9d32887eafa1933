"""
One-off charges and refunds.
"""

from typing import Any

from apps.billing.customers import preferred_currency
from apps.billing.payment import Payment
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)


def charge(org: Organization, amount: int, payment_method: str, **options: Any) -> Payment:
    """
    Charge the organization a one-off amount in the smallest currency unit.

    Raises:
        PaymentFailureError: The payment method was declined
        PaymentActionRequiredError: The customer must confirm the payment
    """
    params: dict[str, Any] = {
        "confirmation_method": "automatic",
        "confirm": True,
        "currency": preferred_currency(org),
        **options,
        "amount": amount,
        "payment_method": payment_method,
    }
    if org.has_stripe_id:
        params["customer"] = org.stripe_customer_id

    payment = Payment.from_stripe(get_stripe().PaymentIntent.create(**params))

    logger.info(
        "charge_created",
        payment_intent_id=payment.id,
        organization_id=org.id,
        amount=amount,
        status=payment.status,
    )

    payment.validate()
    return payment


def refund(org: Organization, payment_intent: str, **options: Any) -> Any:
    refund = get_stripe().Refund.create(payment_intent=payment_intent, **options)
    logger.info("charge_refunded", payment_intent_id=payment_intent, organization_id=org.id)
    return refund
