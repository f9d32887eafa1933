"""
Customer services - the organization's identity in Stripe.

All Stripe API calls are isolated here for testability.
External calls must NOT be inside database transactions.
"""

from typing import Any

from apps.billing.exceptions import CustomerAlreadyCreatedError, InvalidCustomerError
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger
from apps.organizations.models import Organization
from config.settings.base import settings

logger = get_logger(__name__)


def assert_customer_exists(org: Organization) -> None:
    """Raise InvalidCustomerError if the organization has no Stripe customer."""
    if not org.has_stripe_id:
        raise InvalidCustomerError.not_yet_created(org)


def create_as_stripe_customer(org: Organization, **options: Any) -> Any:
    """
    Create the Stripe customer for an organization and store its ID.

    The organization's billing email is used unless `email` is passed.
    """
    if org.has_stripe_id:
        raise CustomerAlreadyCreatedError.exists(org)

    if "email" not in options and org.stripe_email:
        options["email"] = org.stripe_email

    options.setdefault("name", org.name)
    options.setdefault("metadata", {"organization_id": str(org.id)})

    customer = get_stripe().Customer.create(**options)

    org.stripe_customer_id = customer["id"]
    org.save(update_fields=["stripe_customer_id", "updated_at"])

    logger.info("stripe_customer_created", customer_id=customer["id"], organization_id=org.id)
    return customer


def as_stripe_customer(org: Organization, expand: list[str] | None = None) -> Any:
    assert_customer_exists(org)
    return get_stripe().Customer.retrieve(org.stripe_customer_id, expand=expand or [])


def create_or_get_stripe_customer(org: Organization, **options: Any) -> Any:
    if org.has_stripe_id:
        return as_stripe_customer(org)
    return create_as_stripe_customer(org, **options)


def update_stripe_customer(org: Organization, **options: Any) -> Any:
    assert_customer_exists(org)
    return get_stripe().Customer.modify(org.stripe_customer_id, **options)


def apply_coupon(org: Organization, coupon: str) -> Any:
    return update_stripe_customer(org, coupon=coupon)


def preferred_currency(org: Organization) -> str:
    """Currency used for charges and invoice items."""
    return settings.BILLING_CURRENCY


def billing_portal_url(org: Organization, return_url: str | None = None) -> str:
    """Create a Stripe Billing Portal session and return its URL."""
    assert_customer_exists(org)

    session = get_stripe().billing_portal.Session.create(
        customer=org.stripe_customer_id,
        return_url=return_url or "/",
    )
    return session["url"]


def is_tax_exempt(org: Organization) -> bool:
    return as_stripe_customer(org).get("tax_exempt") == "exempt"


def is_not_tax_exempt(org: Organization) -> bool:
    return as_stripe_customer(org).get("tax_exempt") == "none"


def reverse_charge_applies(org: Organization) -> bool:
    return as_stripe_customer(org).get("tax_exempt") == "reverse"
