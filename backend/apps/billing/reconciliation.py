"""
Webhook reconciliation - applies Stripe events to local subscription state.

Handlers are idempotent: Stripe delivers at least once and in no guaranteed
order, so applying the same event twice must leave the same local state.
Events about customers or subscriptions that aren't tracked locally are
acknowledged without writes.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from django.db import transaction

from apps.billing.exceptions import MalformedEventError
from apps.billing.gateway import RemoteSubscription, from_timestamp, to_timestamp
from apps.billing.models import Subscription
from apps.billing.payment_methods import update_default_payment_method_from_stripe
from apps.billing.subscriptions import SubscriptionEngine
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)


class EventKind(StrEnum):
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_DELETED = "customer.deleted"
    UNHANDLED = "unhandled"

    @classmethod
    def from_type(cls, event_type: str) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNHANDLED


@dataclass(frozen=True)
class WebhookEvent:
    """A verified Stripe event decoded into its kind and data object."""

    id: str | None
    type: str
    kind: EventKind
    data_object: Mapping[str, Any]
    created: datetime | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> "WebhookEvent":
        if not isinstance(payload, Mapping):
            raise MalformedEventError("Event is not an object")

        event_type = payload.get("type")
        if not isinstance(event_type, str):
            raise MalformedEventError("Event has no type")

        data = payload.get("data")
        data_object = data.get("object") if isinstance(data, Mapping) else None
        if not isinstance(data_object, Mapping):
            raise MalformedEventError("Event has no data object")

        created = payload.get("created")

        return cls(
            id=payload.get("id"),
            type=event_type,
            kind=EventKind.from_type(event_type),
            data_object=data_object,
            created=from_timestamp(created) if isinstance(created, int) else None,
        )


def handle_event(event: WebhookEvent) -> bool:
    """
    Dispatch an event to its handler.

    Returns:
        True if the event kind is handled, False for unhandled kinds
    """
    match event.kind:
        case EventKind.SUBSCRIPTION_UPDATED:
            handle_subscription_updated(event.data_object, event.created)
        case EventKind.SUBSCRIPTION_DELETED:
            handle_subscription_deleted(event.data_object)
        case EventKind.CUSTOMER_UPDATED:
            handle_customer_updated(event.data_object)
        case EventKind.CUSTOMER_DELETED:
            handle_customer_deleted(event.data_object)
        case EventKind.UNHANDLED:
            logger.debug("stripe_webhook_unhandled_event", event_type=event.type)
            return False

    return True


def find_owner(stripe_customer_id: str | None) -> Organization | None:
    if not stripe_customer_id:
        return None
    return Organization.objects.filter(stripe_customer_id=stripe_customer_id).first()


def handle_subscription_updated(data: Mapping[str, Any], created: datetime | None = None) -> None:
    remote = RemoteSubscription.from_stripe(data)

    owner = find_owner(remote.customer)
    if owner is None:
        logger.debug("stripe_webhook_unknown_customer", customer_id=remote.customer)
        return

    subscriptions = list(owner.subscriptions.filter(stripe_subscription_id=remote.id))
    if not subscriptions:
        logger.debug("stripe_webhook_unknown_subscription", subscription_id=remote.id)
        return

    for subscription in subscriptions:
        apply_remote_subscription(subscription, remote, observed_at=created)


def apply_remote_subscription(
    subscription: Subscription,
    remote: RemoteSubscription,
    observed_at: datetime | None = None,
) -> Subscription | None:
    """
    Bring a local subscription in line with Stripe's view of it.

    Shared by the subscription-updated webhook and manual resync. `observed_at`
    is when Stripe produced this state (the event creation time). State older
    than the newest one already applied is skipped, so late deliveries never
    roll the record back. Returns None when the subscription is gone or was
    purged because its first payment expired.
    """
    with transaction.atomic():
        current = Subscription.objects.select_for_update().filter(pk=subscription.pk).first()
        if current is None:
            return None

        if (
            observed_at is not None
            and current.remote_updated_at is not None
            and observed_at < current.remote_updated_at
        ):
            logger.info(
                "subscription_reconcile_skipped_stale",
                subscription_id=remote.id,
                observed_at=observed_at.isoformat(),
                applied_at=current.remote_updated_at.isoformat(),
            )
            subscription.refresh_from_db()
            return subscription

        if remote.status == Subscription.Status.INCOMPLETE_EXPIRED:
            current.items.all().delete()
            current.delete()
            logger.info("subscription_purged", subscription_id=remote.id)
            return None

        with subscription.locked() as row:
            row.stripe_plan = remote.plan
            row.quantity = remote.quantity

            # Trial end is only written when it actually changed
            if remote.trial_end is not None and (
                row.trial_ends_at is None or to_timestamp(row.trial_ends_at) != to_timestamp(remote.trial_end)
            ):
                row.trial_ends_at = remote.trial_end

            if not remote.cancel_at_period_end:
                row.ends_at = None
            else:
                row.ends_at = row.trial_ends_at if row.on_trial else remote.current_period_end

            if remote.status is not None:
                row.status = remote.status

            if remote.items is not None:
                row.sync_items(remote.items)

            if observed_at is not None:
                row.remote_updated_at = observed_at

    logger.info(
        "subscription_reconciled",
        subscription_id=remote.id,
        status=subscription.status,
        version=subscription.version,
    )
    return subscription


def handle_subscription_deleted(data: Mapping[str, Any]) -> None:
    subscription_id = data.get("id")
    owner = find_owner(data.get("customer"))
    if owner is None or not subscription_id:
        return

    for subscription in owner.subscriptions.filter(stripe_subscription_id=subscription_id):
        SubscriptionEngine(subscription).mark_as_canceled()


def handle_customer_updated(data: Mapping[str, Any]) -> None:
    owner = find_owner(data.get("id"))
    if owner is None:
        return

    update_default_payment_method_from_stripe(owner)


def handle_customer_deleted(data: Mapping[str, Any]) -> None:
    """Cancel every subscription of the customer and forget its Stripe identity."""
    owner = find_owner(data.get("id"))
    if owner is None:
        return

    for subscription in owner.subscriptions.all():
        SubscriptionEngine(subscription).skip_trial().mark_as_canceled()

    owner.stripe_customer_id = None
    owner.trial_ends_at = None
    owner.card_brand = None
    owner.card_last_four = None
    owner.save(update_fields=["stripe_customer_id", "trial_ends_at", "card_brand", "card_last_four", "updated_at"])

    logger.info("stripe_customer_deleted", organization_id=owner.id)
