"""
Payment method services.

Stripe vaults the payment methods; the organization only mirrors the brand
and last four digits of the default one for display.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import stripe

from apps.billing.customers import as_stripe_customer, assert_customer_exists
from apps.billing.exceptions import InvalidPaymentMethodError
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)

CARD_FIELDS = ["card_brand", "card_last_four", "updated_at"]


@dataclass(frozen=True)
class PaymentMethod:
    """A Stripe PaymentMethod that belongs to the organization's customer."""

    id: str
    customer: str
    type: str
    card_brand: str | None = None
    card_last_four: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_stripe(cls, org: Organization, payment_method: Mapping[str, Any]) -> "PaymentMethod":
        """
        Raises:
            InvalidPaymentMethodError: The payment method belongs to another customer
        """
        if payment_method.get("customer") != org.stripe_customer_id:
            raise InvalidPaymentMethodError.invalid_owner(payment_method.get("id"), org)

        card = payment_method.get("card") or {}
        return cls(
            id=payment_method["id"],
            customer=payment_method["customer"],
            type=payment_method.get("type") or "",
            card_brand=card.get("brand"),
            card_last_four=card.get("last4"),
            raw=payment_method,
        )


def _resolve(payment_method: str | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(payment_method, Mapping):
        return payment_method
    return get_stripe().PaymentMethod.retrieve(payment_method)


def _default_id(customer: Mapping[str, Any]) -> str | None:
    default = (customer.get("invoice_settings") or {}).get("default_payment_method")
    if isinstance(default, Mapping):
        return default.get("id")
    return default


def create_setup_intent(org: Organization, **options: Any) -> Any:
    """Start collecting a payment method for later off-session use by the organization's customer."""
    params: dict[str, Any] = {"usage": "off_session"}
    if org.has_stripe_id:
        params["customer"] = org.stripe_customer_id
    return get_stripe().SetupIntent.create(**{**params, **options})


def payment_methods(org: Organization, **params: Any) -> list[PaymentMethod]:
    if not org.has_stripe_id:
        return []

    params = {"limit": 24, **params}
    result = get_stripe().PaymentMethod.list(customer=org.stripe_customer_id, type="card", **params)
    return [PaymentMethod.from_stripe(org, pm) for pm in result["data"]]


def has_payment_method(org: Organization) -> bool:
    return bool(payment_methods(org))


def has_default_payment_method(org: Organization) -> bool:
    return bool(org.card_brand)


def add_payment_method(org: Organization, payment_method: str | Mapping[str, Any]) -> PaymentMethod:
    """Attach a payment method to the customer if it isn't already."""
    assert_customer_exists(org)

    stripe_payment_method = _resolve(payment_method)

    if stripe_payment_method.get("customer") != org.stripe_customer_id:
        stripe_payment_method = get_stripe().PaymentMethod.attach(
            stripe_payment_method["id"],
            customer=org.stripe_customer_id,
        )

    return PaymentMethod.from_stripe(org, stripe_payment_method)


def remove_payment_method(org: Organization, payment_method: str | Mapping[str, Any]) -> None:
    """
    Detach a payment method from the customer.

    Clears the card mirror when the detached method was the default.
    """
    assert_customer_exists(org)

    stripe_payment_method = _resolve(payment_method)

    if stripe_payment_method.get("customer") != org.stripe_customer_id:
        return

    default_id = _default_id(as_stripe_customer(org))

    get_stripe().PaymentMethod.detach(stripe_payment_method["id"])

    if stripe_payment_method["id"] == default_id:
        org.card_brand = None
        org.card_last_four = None
        org.save(update_fields=CARD_FIELDS)

    logger.info("payment_method_removed", payment_method_id=stripe_payment_method["id"], organization_id=org.id)


def default_payment_method(org: Organization) -> PaymentMethod | Mapping[str, Any] | None:
    """
    The customer's default payment method.

    Falls back to the legacy default source (returned as the raw Stripe
    object) when no default payment method is set.
    """
    if not org.has_stripe_id:
        return None

    customer = as_stripe_customer(org, expand=["invoice_settings.default_payment_method", "default_source"])

    default = (customer.get("invoice_settings") or {}).get("default_payment_method")
    if isinstance(default, Mapping):
        return PaymentMethod.from_stripe(org, default)

    return customer.get("default_source") or None


def update_default_payment_method(org: Organization, payment_method: str | Mapping[str, Any]) -> PaymentMethod | None:
    """
    Make a payment method the customer's default and mirror its card details.

    Returns None when it already was the default.
    """
    assert_customer_exists(org)

    customer = as_stripe_customer(org)
    stripe_payment_method = _resolve(payment_method)

    if stripe_payment_method["id"] == _default_id(customer):
        return None

    added = add_payment_method(org, stripe_payment_method)

    get_stripe().Customer.modify(
        org.stripe_customer_id,
        invoice_settings={"default_payment_method": added.id},
    )

    _fill_payment_method_details(org, added)
    org.save(update_fields=CARD_FIELDS)

    logger.info("default_payment_method_updated", payment_method_id=added.id, organization_id=org.id)
    return added


def update_default_payment_method_from_stripe(org: Organization) -> Organization:
    """Refresh the card mirror from the customer's default in Stripe."""
    default = default_payment_method(org)

    if isinstance(default, PaymentMethod):
        _fill_payment_method_details(org, default)
    elif default is not None:
        _fill_source_details(org, default)
    else:
        org.card_brand = None
        org.card_last_four = None

    org.save(update_fields=CARD_FIELDS)
    return org


def delete_payment_methods(org: Organization) -> None:
    for payment_method in payment_methods(org):
        remove_payment_method(org, payment_method.raw)

    update_default_payment_method_from_stripe(org)


def find_payment_method(org: Organization, payment_method: str) -> PaymentMethod | None:
    """Look up a payment method; any retrieval failure counts as not found."""
    try:
        stripe_payment_method = _resolve(payment_method)
    except stripe.StripeError:
        return None

    return PaymentMethod.from_stripe(org, stripe_payment_method)


def _fill_payment_method_details(org: Organization, payment_method: PaymentMethod) -> None:
    if payment_method.type == "card":
        org.card_brand = payment_method.card_brand
        org.card_last_four = payment_method.card_last_four


def _fill_source_details(org: Organization, source: Mapping[str, Any]) -> None:
    match source.get("object"):
        case "card":
            org.card_brand = source.get("brand")
            org.card_last_four = source.get("last4")
        case "bank_account":
            org.card_brand = "Bank Account"
            org.card_last_four = source.get("last4")
