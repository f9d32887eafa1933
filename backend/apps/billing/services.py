"""
Billing services - subscription queries on the organization and manual resync.

All Stripe API calls are isolated here for testability.
External calls must NOT be inside database transactions.
"""

from collections.abc import Iterable

from django.utils import timezone

from apps.billing.builder import SubscriptionBuilder
from apps.billing.gateway import RemoteSubscription
from apps.billing.models import Subscription
from apps.billing.policy import BillingPolicy
from apps.billing.reconciliation import apply_remote_subscription
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)

DEFAULT_SUBSCRIPTION = "default"


def new_subscription(org: Organization, name: str, plans: str | list[str]) -> SubscriptionBuilder:
    """Begin creating a new subscription."""
    return SubscriptionBuilder(org, name, plans)


def get_subscription(org: Organization, name: str = DEFAULT_SUBSCRIPTION) -> Subscription | None:
    """The newest subscription with the given name."""
    return org.subscriptions.filter(name=name).order_by("-created_at", "-id").first()


def is_on_generic_trial(org: Organization) -> bool:
    return org.on_generic_trial


def is_on_trial(org: Organization, name: str = DEFAULT_SUBSCRIPTION, plan: str | None = None) -> bool:
    """
    Whether the organization is on trial.

    For the default subscription without a plan, an organization-level
    generic trial counts too.
    """
    if name == DEFAULT_SUBSCRIPTION and plan is None and org.on_generic_trial:
        return True

    subscription = get_subscription(org, name)
    if subscription is None or not subscription.on_trial:
        return False

    return subscription.has_plan(plan) if plan else True


def is_subscribed(
    org: Organization,
    name: str = DEFAULT_SUBSCRIPTION,
    plan: str | None = None,
    policy: BillingPolicy | None = None,
) -> bool:
    policy = policy or BillingPolicy.from_settings()

    subscription = get_subscription(org, name)
    if subscription is None or not subscription.is_valid(policy):
        return False

    return subscription.has_plan(plan) if plan else True


def has_incomplete_payment(org: Organization, name: str = DEFAULT_SUBSCRIPTION) -> bool:
    subscription = get_subscription(org, name)
    return subscription.has_incomplete_payment if subscription else False


def is_subscribed_to_plan(
    org: Organization,
    plans: str | Iterable[str],
    name: str = DEFAULT_SUBSCRIPTION,
    policy: BillingPolicy | None = None,
) -> bool:
    """Whether the named subscription is valid and on any of the given plans."""
    policy = policy or BillingPolicy.from_settings()

    subscription = get_subscription(org, name)
    if subscription is None or not subscription.is_valid(policy):
        return False

    if isinstance(plans, str):
        plans = [plans]

    return any(subscription.has_plan(plan) for plan in plans)


def is_on_plan(org: Organization, plan: str, policy: BillingPolicy | None = None) -> bool:
    """Whether any valid subscription of the organization is on the plan."""
    policy = policy or BillingPolicy.from_settings()
    return any(
        subscription.is_valid(policy) and subscription.has_plan(plan) for subscription in org.subscriptions.all()
    )


def resync_subscription(subscription: Subscription) -> Subscription | None:
    """
    Re-read a subscription from Stripe and apply it locally.

    Recovery path for a local write lost after a successful remote call.
    Returns None when Stripe reports the subscription as incomplete_expired
    and the local record was purged.
    """
    stripe = get_stripe()

    # Anything Stripe sent before this read is older than what we apply
    observed_at = timezone.now()
    remote = RemoteSubscription.from_stripe(stripe.Subscription.retrieve(subscription.stripe_subscription_id))

    logger.info(
        "subscription_resync_started",
        subscription_id=subscription.stripe_subscription_id,
        local_status=subscription.status,
        remote_status=remote.status,
    )
    return apply_remote_subscription(subscription, remote, observed_at=observed_at)
