"""
Subscription item engine - quantity changes and swaps of a single plan item.

When the parent subscription is single-plan, its plan and quantity shortcut
fields follow the item.
"""

from typing import Any, Self

from apps.billing.behavior import ChangeBehaviorMixin
from apps.billing.exceptions import SubscriptionUpdateFailure
from apps.billing.gateway import RemoteItem
from apps.billing.models import SubscriptionItem
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger

logger = get_logger(__name__)


class SubscriptionItemEngine(ChangeBehaviorMixin):
    def __init__(self, item: SubscriptionItem):
        self.item = item

    def increment_quantity(self, count: int = 1) -> Self:
        return self.update_quantity(self.item.quantity + count)

    def increment_and_invoice(self, count: int = 1) -> Self:
        self.always_invoice()
        return self.increment_quantity(count)

    def decrement_quantity(self, count: int = 1) -> Self:
        return self.update_quantity(max(1, self.item.quantity - count))

    def update_quantity(self, quantity: int) -> Self:
        self._guard_against_incomplete()

        get_stripe().SubscriptionItem.modify(
            self.item.stripe_id,
            quantity=quantity,
            payment_behavior=self.payment_behavior,
            proration_behavior=self.proration_behavior,
        )

        with self.item.subscription.locked() as row:
            row.items.filter(pk=self.item.pk).update(quantity=quantity)
            if row.has_single_plan:
                row.quantity = quantity
        self.item.refresh_from_db()

        logger.info(
            "subscription_item_quantity_updated",
            subscription_item_id=self.item.stripe_id,
            quantity=quantity,
        )
        return self

    def swap(self, plan: str, **options: Any) -> Self:
        """Move this item to another plan, keeping its quantity."""
        self._guard_against_incomplete()

        params: dict[str, Any] = {
            "price": plan,
            "quantity": self.item.quantity,
            "payment_behavior": self.payment_behavior,
            "proration_behavior": self.proration_behavior,
        }
        tax_rates = self.item.subscription.owner.tax_rates_for_plan(plan)
        if tax_rates:
            params["tax_rates"] = tax_rates
        params.update(options)

        remote = RemoteItem.from_stripe(get_stripe().SubscriptionItem.modify(self.item.stripe_id, **params))

        with self.item.subscription.locked() as row:
            row.items.filter(pk=self.item.pk).update(stripe_plan=plan, quantity=remote.quantity)
            if row.has_single_plan:
                row.stripe_plan = plan
                row.quantity = remote.quantity
        self.item.refresh_from_db()

        logger.info("subscription_item_swapped", subscription_item_id=self.item.stripe_id, plan=plan)
        return self

    def swap_and_invoice(self, plan: str, **options: Any) -> Self:
        self.always_invoice()
        return self.swap(plan, **options)

    def _guard_against_incomplete(self) -> None:
        subscription = self.item.subscription
        if subscription.is_incomplete:
            raise SubscriptionUpdateFailure.incomplete_subscription(subscription)
