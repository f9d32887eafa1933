"""
Subscription builder - accumulates a draft subscription and creates it in one call.

Usage:
    subscription = (
        SubscriptionBuilder(org, "default", ["price_basic"])
        .trial_days(14)
        .with_coupon("LAUNCH")
        .create("pm_card_visa")
    )
"""

from datetime import datetime, timedelta
from typing import Any, Self

from django.db import transaction
from django.utils import timezone

from apps.billing.behavior import ChangeBehaviorMixin
from apps.billing.customers import create_or_get_stripe_customer
from apps.billing.gateway import RemoteSubscription, to_timestamp
from apps.billing.models import Subscription
from apps.billing.payment_methods import update_default_payment_method
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)


class SubscriptionBuilder(ChangeBehaviorMixin):
    def __init__(self, owner: Organization, name: str, plans: str | list[str] | None = None):
        self.owner = owner
        self.name = name
        self.items: dict[str, dict[str, Any]] = {}
        self.trial_expires: datetime | None = None
        self.trial_skipped = False
        self.billing_cycle_anchor: int | str | None = None
        self.coupon: str | None = None
        self.metadata: dict[str, str] | None = None

        if isinstance(plans, str):
            plans = [plans]
        for plan in plans or []:
            self.plan(plan)

    def plan(self, plan: str, quantity: int = 1) -> Self:
        """Stage a plan, replacing any earlier entry for the same plan."""
        item: dict[str, Any] = {"price": plan, "quantity": quantity}
        tax_rates = self.owner.tax_rates_for_plan(plan)
        if tax_rates:
            item["tax_rates"] = tax_rates
        self.items[plan] = item
        return self

    def quantity(self, quantity: int, plan: str | None = None) -> Self:
        if plan is None:
            if len(self.items) != 1:
                raise ValueError("Plan is required when creating multi-plan subscriptions.")
            plan = next(iter(self.items))
        return self.plan(plan, quantity)

    # Trial policy: the last call wins

    def trial_days(self, days: int) -> Self:
        self.trial_expires = timezone.now() + timedelta(days=days)
        self.trial_skipped = False
        return self

    def trial_until(self, until: datetime) -> Self:
        self.trial_expires = until
        self.trial_skipped = False
        return self

    def skip_trial(self) -> Self:
        self.trial_skipped = True
        return self

    def anchor_billing_cycle_on(self, date: datetime | str) -> Self:
        self.billing_cycle_anchor = to_timestamp(date) if isinstance(date, datetime) else date
        return self

    def with_coupon(self, coupon: str) -> Self:
        self.coupon = coupon
        return self

    def with_metadata(self, metadata: dict[str, str]) -> Self:
        self.metadata = metadata
        return self

    def add(
        self,
        customer_options: dict[str, Any] | None = None,
        subscription_options: dict[str, Any] | None = None,
    ) -> Subscription:
        """Create the subscription without a new payment method."""
        return self.create(None, customer_options, subscription_options)

    def create(
        self,
        payment_method: str | None = None,
        customer_options: dict[str, Any] | None = None,
        subscription_options: dict[str, Any] | None = None,
    ) -> Subscription:
        """
        Create the subscription in Stripe and mirror it locally.

        The local record is kept even when the first payment is incomplete.

        Raises:
            PaymentFailureError: The first payment needs a new payment method
            PaymentActionRequiredError: The customer must confirm the first payment
        """
        customer = create_or_get_stripe_customer(self.owner, **(customer_options or {}))

        if payment_method:
            update_default_payment_method(self.owner, payment_method)

        payload = {"customer": customer["id"], **self.build_payload(), **(subscription_options or {})}

        response = RemoteSubscription.from_stripe(get_stripe().Subscription.create(**payload))

        with transaction.atomic():
            subscription = Subscription.objects.create(
                owner=self.owner,
                name=self.name,
                stripe_subscription_id=response.id,
                status=response.status,
                stripe_plan=response.plan,
                quantity=response.quantity,
                trial_ends_at=None if self.trial_skipped else self.trial_expires,
                ends_at=None,
            )
            subscription.sync_items(response.items or ())

        logger.info(
            "subscription_created",
            subscription_id=response.id,
            organization_id=self.owner.id,
            name=self.name,
            plans=list(self.items),
            status=response.status,
        )

        if subscription.has_incomplete_payment:
            payment = response.latest_payment()
            if payment is not None:
                payment.validate()

        return subscription

    def build_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "expand": ["latest_invoice.payment_intent"],
            "items": list(self.items.values()),
            "payment_behavior": self.payment_behavior,
            "proration_behavior": self.proration_behavior,
            "off_session": True,
        }

        optional = {
            "billing_cycle_anchor": self.billing_cycle_anchor,
            "coupon": self.coupon,
            "metadata": self.metadata,
            "trial_end": self._trial_end_for_payload(),
        }
        payload.update({key: value for key, value in optional.items() if value is not None})

        # Tax rates take precedence over the flat percentage
        tax_rates = self.owner.get_tax_rates()
        if tax_rates:
            payload["default_tax_rates"] = tax_rates
            return payload

        # Legacy flat percentage. Stripe rejects it on current API versions, the
        # pinned one included, so taxed owners should configure tax rates
        tax_percentage = self.owner.get_tax_percentage()
        if tax_percentage > 0:
            logger.warning(
                "subscription_legacy_tax_percent",
                organization_id=self.owner.id,
                tax_percent=str(tax_percentage),
            )
            payload["tax_percent"] = tax_percentage

        return payload

    def _trial_end_for_payload(self) -> int | str | None:
        if self.trial_skipped:
            return "now"
        if self.trial_expires is None:
            return None
        return to_timestamp(self.trial_expires)
