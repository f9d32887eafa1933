"""
Subscription engine - every operation that changes what a subscription bills for.

Each operation follows the same shape: guard, Stripe mutation, locked local
write, post-check. Stripe calls are never made inside a database transaction;
the local write happens after the remote call returns and runs under the
subscription's row lock so it serializes with webhook reconciliation.
"""

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Self

from django.utils import timezone

from apps.billing import invoices
from apps.billing.behavior import ChangeBehaviorMixin, PaymentBehavior, ProrationBehavior
from apps.billing.exceptions import IncompletePaymentError, SubscriptionUpdateFailure
from apps.billing.gateway import RemoteItem, RemoteSubscription, to_timestamp
from apps.billing.items import SubscriptionItemEngine
from apps.billing.models import Subscription
from apps.billing.payment import Payment
from apps.billing.policy import BillingPolicy
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger

logger = get_logger(__name__)


class SubscriptionEngine(ChangeBehaviorMixin):
    """
    Mutating operations on one local subscription, synchronized with Stripe.

    Proration and payment behavior are chainable per engine instance:

        SubscriptionEngine(subscription).no_prorate().swap(["price_pro"])
    """

    def __init__(self, subscription: Subscription, policy: BillingPolicy | None = None):
        self.subscription = subscription
        self.policy = policy or BillingPolicy.from_settings()
        self.billing_cycle_anchor: int | str | None = None
        self._trial_skipped = False

    @property
    def stripe_id(self) -> str:
        return self.subscription.stripe_subscription_id

    def is_active(self) -> bool:
        return self.subscription.is_active(self.policy)

    def is_valid(self) -> bool:
        return self.subscription.is_valid(self.policy)

    # Modifiers

    def anchor_billing_cycle_on(self, date: datetime | str = "now") -> Self:
        """Change the billing cycle anchor on the next swap."""
        self.billing_cycle_anchor = to_timestamp(date) if isinstance(date, datetime) else date
        return self

    def skip_trial(self) -> Self:
        """End the trial locally; persisted with the next local write."""
        self.subscription.trial_ends_at = None
        self._trial_skipped = True
        return self

    # Quantity

    def increment_quantity(self, count: int = 1, plan: str | None = None) -> Self:
        self._guard_against_incomplete()

        if plan:
            self._item_engine(plan).increment_quantity(count)
            return self

        self._guard_against_multiple_plans()

        return self.update_quantity(self.subscription.quantity + count)

    def increment_and_invoice(self, count: int = 1, plan: str | None = None) -> Self:
        """Increment the quantity and invoice the proration immediately."""
        self.always_invoice()
        return self.increment_quantity(count, plan)

    def decrement_quantity(self, count: int = 1, plan: str | None = None) -> Self:
        self._guard_against_incomplete()

        if plan:
            self._item_engine(plan).decrement_quantity(count)
            return self

        self._guard_against_multiple_plans()

        return self.update_quantity(max(1, self.subscription.quantity - count))

    def update_quantity(self, quantity: int, plan: str | None = None) -> Self:
        self._guard_against_incomplete()

        if plan:
            self._item_engine(plan).update_quantity(quantity)
            return self

        self._guard_against_multiple_plans()

        get_stripe().Subscription.modify(
            self.stripe_id,
            quantity=quantity,
            payment_behavior=self.payment_behavior,
            proration_behavior=self.proration_behavior,
        )

        with self._locked() as row:
            row.quantity = quantity
            row.items.filter(stripe_plan=row.stripe_plan).update(quantity=quantity)

        logger.info(
            "subscription_quantity_updated",
            subscription_id=self.stripe_id,
            quantity=quantity,
        )
        return self

    # Plans

    def swap(self, plans: str | Sequence[str], **options: Any) -> Self:
        """
        Replace the full plan set of the subscription.

        Remote items whose plan is not in `plans` are sent as explicit
        deletions. Local changes are applied before the payment is validated
        and are kept when validation raises.

        Raises:
            ValueError: No plans were given
            SubscriptionUpdateFailure: The subscription is incomplete
            IncompletePaymentError: The swap left an unpaid invoice
        """
        plans = [plans] if isinstance(plans, str) else list(plans)
        if not plans:
            raise ValueError("Please provide at least one plan when swapping.")

        self._guard_against_incomplete()

        stripe = get_stripe()
        items = self._merge_items_to_delete(self._parse_swap_plans(plans))

        response = RemoteSubscription.from_stripe(
            stripe.Subscription.modify(self.stripe_id, **self._swap_options(items, options))
        )

        with self._locked() as row:
            row.status = response.status
            row.stripe_plan = response.plan
            row.quantity = response.quantity
            row.ends_at = None
            if response.items is not None:
                row.sync_items(response.items)

        logger.info(
            "subscription_swapped",
            subscription_id=self.stripe_id,
            plans=plans,
            status=response.status,
        )

        if self.subscription.has_incomplete_payment:
            payment = response.latest_payment()
            if payment is not None:
                payment.validate()

        return self

    def swap_and_invoice(self, plans: str | Sequence[str], **options: Any) -> Self:
        self.always_invoice()
        return self.swap(plans, **options)

    def add_plan(self, plan: str, quantity: int = 1, **options: Any) -> Self:
        """
        Attach a new plan to the subscription.

        A single-plan subscription becomes multi-plan, so its plan and
        quantity shortcut fields are cleared.
        """
        self._guard_against_incomplete()

        if self.subscription.items.filter(stripe_plan=plan).exists():
            raise SubscriptionUpdateFailure.duplicate_plan(self.subscription, plan)

        params: dict[str, Any] = {
            "subscription": self.stripe_id,
            "price": plan,
            "quantity": quantity,
            "payment_behavior": self.payment_behavior,
            "proration_behavior": self.proration_behavior,
        }
        tax_rates = self.subscription.owner.tax_rates_for_plan(plan)
        if tax_rates:
            params["tax_rates"] = tax_rates
        params.update(options)

        item = RemoteItem.from_stripe(get_stripe().SubscriptionItem.create(**params))

        with self._locked() as row:
            row.items.create(stripe_id=item.id, stripe_plan=plan, quantity=quantity)
            if row.has_single_plan:
                row.stripe_plan = None
                row.quantity = None

        logger.info("subscription_plan_added", subscription_id=self.stripe_id, plan=plan, quantity=quantity)
        return self

    def add_plan_and_invoice(self, plan: str, quantity: int = 1, **options: Any) -> Self:
        self.always_invoice()
        return self.add_plan(plan, quantity, **options)

    def remove_plan(self, plan: str) -> Self:
        """
        Detach a plan from a multi-plan subscription.

        When one item remains, the subscription collapses back into
        single-plan mode.
        """
        self._guard_against_incomplete()

        if self.subscription.has_single_plan or self.subscription.items.count() < 2:
            raise SubscriptionUpdateFailure.cannot_delete_last_plan(self.subscription)

        item = self.subscription.find_item_or_fail(plan)

        get_stripe().SubscriptionItem.delete(item.stripe_id, proration_behavior=self.proration_behavior)

        with self._locked() as row:
            row.items.filter(stripe_plan=plan).delete()
            remaining = list(row.items.all())
            if len(remaining) == 1:
                row.stripe_plan = remaining[0].stripe_plan
                row.quantity = remaining[0].quantity

        logger.info("subscription_plan_removed", subscription_id=self.stripe_id, plan=plan)
        return self

    # Trial

    def extend_trial(self, date: datetime) -> Self:
        if date <= timezone.now():
            raise ValueError("Extending a subscription's trial requires a date in the future.")

        get_stripe().Subscription.modify(self.stripe_id, trial_end=to_timestamp(date))

        with self._locked() as row:
            row.trial_ends_at = date

        logger.info("subscription_trial_extended", subscription_id=self.stripe_id, trial_ends_at=date.isoformat())
        return self

    # Cancellation

    def cancel(self) -> Self:
        """
        Cancel at the end of the billing period.

        The grace period runs until the trial end when on trial, otherwise
        until the end of the current period.
        """
        response = RemoteSubscription.from_stripe(
            get_stripe().Subscription.modify(self.stripe_id, cancel_at_period_end=True)
        )

        with self._locked() as row:
            row.status = response.status
            row.ends_at = row.trial_ends_at if row.on_trial else response.current_period_end

        logger.info(
            "subscription_canceled",
            subscription_id=self.stripe_id,
            ends_at=self.subscription.ends_at.isoformat() if self.subscription.ends_at else None,
        )
        return self

    def cancel_now(self) -> Self:
        get_stripe().Subscription.cancel(
            self.stripe_id,
            prorate=self.proration_behavior == ProrationBehavior.CREATE_PRORATIONS,
        )
        self.mark_as_canceled()
        return self

    def cancel_now_and_invoice(self) -> Self:
        get_stripe().Subscription.cancel(
            self.stripe_id,
            invoice_now=True,
            prorate=self.proration_behavior == ProrationBehavior.CREATE_PRORATIONS,
        )
        self.mark_as_canceled()
        return self

    def mark_as_canceled(self) -> None:
        with self._locked() as row:
            row.status = Subscription.Status.CANCELED
            row.ends_at = timezone.now()

        logger.info("subscription_canceled_now", subscription_id=self.stripe_id)

    def resume(self) -> Self:
        if not self.subscription.on_grace_period:
            raise ValueError("Unable to resume subscription that is not within grace period.")

        trial_end = to_timestamp(self.subscription.trial_ends_at) if self.subscription.on_trial else "now"

        response = RemoteSubscription.from_stripe(
            get_stripe().Subscription.modify(
                self.stripe_id,
                cancel_at_period_end=False,
                trial_end=trial_end,
            )
        )

        with self._locked() as row:
            row.status = response.status
            row.ends_at = None

        logger.info("subscription_resumed", subscription_id=self.stripe_id, status=response.status)
        return self

    # Remote state

    def as_stripe_subscription(self, expand: list[str] | None = None) -> Any:
        return get_stripe().Subscription.retrieve(self.stripe_id, expand=expand or [])

    def is_pending(self) -> bool:
        """Whether Stripe holds a pending update for this subscription."""
        return self.as_stripe_subscription().get("pending_update") is not None

    def sync_stripe_status(self) -> Self:
        remote = RemoteSubscription.from_stripe(self.as_stripe_subscription())

        with self._locked() as row:
            row.status = remote.status

        return self

    def sync_tax_percentage(self) -> None:
        """Push the legacy flat tax percentage. Stripe rejects it on current API versions, the pinned one included."""
        get_stripe().Subscription.modify(
            self.stripe_id,
            tax_percent=self.subscription.owner.get_tax_percentage(),
        )

    def sync_tax_rates(self) -> None:
        """Push the owner's current tax rates to the subscription and its items."""
        stripe = get_stripe()
        owner = self.subscription.owner

        stripe.Subscription.modify(self.stripe_id, default_tax_rates=owner.get_tax_rates() or "")

        for item in self.subscription.items.all():
            stripe.SubscriptionItem.modify(
                item.stripe_id,
                tax_rates=owner.tax_rates_for_plan(item.stripe_plan) or "",
            )

    def invoice(self, **options: Any) -> "invoices.Invoice | None":
        """
        Invoice the subscription outside of the regular billing cycle.

        When the payment fails, the subscription's new Stripe status is
        stored before the error is re-raised.
        """
        try:
            return invoices.invoice(self.subscription.owner, subscription=self.stripe_id, **options)
        except IncompletePaymentError as e:
            if e.payment.subscription_status:
                with self._locked() as row:
                    row.status = e.payment.subscription_status
            raise

    def latest_invoice(self) -> "invoices.Invoice | None":
        stripe_subscription = self.as_stripe_subscription(["latest_invoice"])
        latest = stripe_subscription.get("latest_invoice")
        if not latest:
            return None
        return invoices.Invoice.from_stripe(self.subscription.owner, latest)

    def latest_payment(self) -> Payment | None:
        remote = RemoteSubscription.from_stripe(self.as_stripe_subscription(["latest_invoice.payment_intent"]))
        return remote.latest_payment()

    # Internals

    @contextmanager
    def _locked(self) -> Iterator[Subscription]:
        with self.subscription.locked() as row:
            if self._trial_skipped:
                row.trial_ends_at = None
            yield row

    def _guard_against_incomplete(self) -> None:
        if self.subscription.is_incomplete:
            raise SubscriptionUpdateFailure.incomplete_subscription(self.subscription)

    def _guard_against_multiple_plans(self) -> None:
        if self.subscription.has_multiple_plans:
            raise ValueError("This method requires a plan argument since the subscription has multiple plans.")

    def _item_engine(self, plan: str) -> SubscriptionItemEngine:
        item = self.subscription.find_item_or_fail(plan)
        # Share the instance so the item's locked writes refresh it
        item.subscription = self.subscription
        engine = SubscriptionItemEngine(item)
        engine.set_proration_behavior(self.proration_behavior)
        engine.payment_behavior = self.payment_behavior
        return engine

    def _parse_swap_plans(self, plans: list[str]) -> dict[str, dict[str, Any]]:
        owner = self.subscription.owner
        items: dict[str, dict[str, Any]] = {}
        for plan in plans:
            item: dict[str, Any] = {"price": plan}
            tax_rates = owner.tax_rates_for_plan(plan)
            if tax_rates:
                item["tax_rates"] = tax_rates
            items[plan] = item
        return items

    def _merge_items_to_delete(self, items: dict[str, dict[str, Any]]) -> dict[str, dict[str, Any]]:
        """Attach remote item ids, tombstoning items whose plan is not kept."""
        remote = RemoteSubscription.from_stripe(self.as_stripe_subscription())
        for remote_item in remote.items or ():
            item = items.get(remote_item.plan) or {"deleted": True}
            items[remote_item.plan] = {**item, "id": remote_item.id}
        return items

    def _swap_options(self, items: dict[str, dict[str, Any]], options: dict[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "items": list(items.values()),
            "payment_behavior": self.payment_behavior,
            "proration_behavior": self.proration_behavior,
            "expand": ["latest_invoice.payment_intent"],
        }

        if self.payment_behavior != PaymentBehavior.PENDING_IF_INCOMPLETE:
            payload["cancel_at_period_end"] = False

        payload.update(options)

        if self.billing_cycle_anchor is not None:
            payload["billing_cycle_anchor"] = self.billing_cycle_anchor

        payload["trial_end"] = to_timestamp(self.subscription.trial_ends_at) if self.subscription.on_trial else "now"

        return payload
