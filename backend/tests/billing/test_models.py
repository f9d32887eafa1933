"""
Tests for billing models: subscription predicates, queryset filters and the
plan item store.
"""

from datetime import timedelta

import pytest
from django.db import IntegrityError
from django.utils import timezone

from apps.billing.gateway import RemoteItem
from apps.billing.models import Subscription, SubscriptionItem
from apps.billing.policy import BillingPolicy

from .factories import (
    SubscriptionFactory,
    SubscriptionItemFactory,
    create_multi_plan_subscription,
    create_single_plan_subscription,
)

STRICT = BillingPolicy(past_due_is_active=False)
LENIENT = BillingPolicy(past_due_is_active=True)

STATUSES = [
    "active",
    "trialing",
    "past_due",
    "canceled",
    "incomplete",
    "incomplete_expired",
    "unpaid",
    "paused",
]


def _ends_at(state: str):
    now = timezone.now()
    return {"unset": None, "future": now + timedelta(days=3), "past": now - timedelta(days=3)}[state]


class TestIsActive:
    """Tests for the composite active predicate."""

    @pytest.mark.parametrize("status", STATUSES)
    @pytest.mark.parametrize("ends_at_state", ["unset", "future", "past"])
    @pytest.mark.parametrize("past_due_is_active", [False, True])
    def test_matches_definition(self, status: str, ends_at_state: str, past_due_is_active: bool) -> None:
        """Should be active exactly when not ended, not inactive, and past_due allowed by policy."""
        subscription = Subscription(status=status, ends_at=_ends_at(ends_at_state))
        policy = BillingPolicy(past_due_is_active=past_due_is_active)

        expected = (
            ends_at_state != "past"
            and status not in {"incomplete", "incomplete_expired", "unpaid"}
            and (status != "past_due" or past_due_is_active)
        )

        assert subscription.is_active(policy) is expected

    def test_grace_period_keeps_access(self) -> None:
        """Should stay active while a cancellation is pending."""
        subscription = Subscription(status="active", ends_at=timezone.now() + timedelta(days=1))

        assert subscription.is_active(STRICT) is True
        assert subscription.on_grace_period is True
        assert subscription.is_canceled is True
        assert subscription.has_ended is False

    def test_past_due_follows_policy(self) -> None:
        """Should only treat past_due as active when the policy allows it."""
        subscription = Subscription(status="past_due")

        assert subscription.is_active(STRICT) is False
        assert subscription.is_active(LENIENT) is True


class TestPredicates:
    """Tests for the trial, cancellation and status predicates."""

    def test_on_trial(self) -> None:
        """Should be on trial only while trial_ends_at is in the future."""
        assert Subscription(trial_ends_at=timezone.now() + timedelta(days=1)).on_trial is True
        assert Subscription(trial_ends_at=timezone.now() - timedelta(days=1)).on_trial is False
        assert Subscription(trial_ends_at=None).on_trial is False

    def test_is_valid_includes_trial(self) -> None:
        """Should be valid when on trial even if the status is inactive."""
        subscription = Subscription(status="unpaid", trial_ends_at=timezone.now() + timedelta(days=1))

        assert subscription.is_active(STRICT) is False
        assert subscription.is_valid(STRICT) is True

    def test_has_ended(self) -> None:
        """Should have ended once ends_at is in the past."""
        subscription = Subscription(status="canceled", ends_at=timezone.now() - timedelta(seconds=1))

        assert subscription.has_ended is True
        assert subscription.on_grace_period is False

    def test_recurring(self) -> None:
        """Should be recurring when neither on trial nor canceled."""
        assert Subscription(status="active").is_recurring is True
        assert Subscription(status="active", ends_at=timezone.now() + timedelta(days=1)).is_recurring is False

    def test_incomplete_payment(self) -> None:
        """Should report incomplete payment for incomplete and past_due."""
        assert Subscription(status="incomplete").has_incomplete_payment is True
        assert Subscription(status="past_due").has_incomplete_payment is True
        assert Subscription(status="active").has_incomplete_payment is False


@pytest.mark.django_db
class TestPlanShape:
    """Tests for single-plan and multi-plan modes."""

    def test_single_plan(self) -> None:
        """Should report single-plan mode and match its plan."""
        subscription = create_single_plan_subscription(plan="price_basic")

        assert subscription.has_single_plan is True
        assert subscription.has_plan("price_basic") is True
        assert subscription.has_plan("price_pro") is False

    def test_multi_plan(self) -> None:
        """Should look up plans through the items in multi-plan mode."""
        subscription = create_multi_plan_subscription(plans=["price_a", "price_b"])

        assert subscription.has_multiple_plans is True
        assert subscription.has_plan("price_b") is True
        assert subscription.has_plan("price_c") is False

    def test_find_item_or_fail(self) -> None:
        """Should raise DoesNotExist for a plan that isn't attached."""
        subscription = create_multi_plan_subscription(plans=["price_a", "price_b"])

        assert subscription.find_item_or_fail("price_a").stripe_id == "si_price_a"
        with pytest.raises(SubscriptionItem.DoesNotExist):
            subscription.find_item_or_fail("price_c")

    def test_item_plan_unique_per_subscription(self) -> None:
        """Should reject a second item for the same plan."""
        subscription = create_single_plan_subscription(plan="price_basic")

        with pytest.raises(IntegrityError):
            SubscriptionItemFactory.create(subscription=subscription, stripe_plan="price_basic")


@pytest.mark.django_db
class TestSyncItems:
    """Tests for set-reconciliation of subscription items."""

    def test_creates_missing_and_deletes_extraneous(self) -> None:
        """Should leave exactly the remote item set."""
        subscription = create_multi_plan_subscription(plans=["price_a", "price_b"])

        subscription.sync_items(
            [
                RemoteItem(id="si_price_b", plan="price_b", quantity=4),
                RemoteItem(id="si_price_c", plan="price_c", quantity=1),
            ]
        )

        items = {item.stripe_plan: item.quantity for item in subscription.items.all()}
        assert items == {"price_b": 4, "price_c": 1}

    def test_replaces_item_with_new_remote_id(self) -> None:
        """Should swap a local item whose plan now has a different remote id."""
        subscription = create_single_plan_subscription(plan="price_basic")

        subscription.sync_items([RemoteItem(id="si_new", plan="price_basic", quantity=1)])

        assert list(subscription.items.values_list("stripe_id", flat=True)) == ["si_new"]

    def test_empty_remote_set_clears_items(self) -> None:
        """Should delete every item when the remote set is empty."""
        subscription = create_multi_plan_subscription()

        subscription.sync_items([])

        assert subscription.items.count() == 0


@pytest.mark.django_db
class TestLocked:
    """Tests for the locked write helper."""

    def test_saves_changes_and_bumps_version(self) -> None:
        """Should persist the changes, bump the version and refresh the instance."""
        subscription = create_single_plan_subscription()
        version = subscription.version

        with subscription.locked() as row:
            row.status = Subscription.Status.PAST_DUE

        assert subscription.status == Subscription.Status.PAST_DUE
        assert subscription.version == version + 1
        assert Subscription.objects.get(pk=subscription.pk).version == version + 1

    def test_rolls_back_on_error(self) -> None:
        """Should write nothing when the block raises."""
        subscription = create_single_plan_subscription()

        with pytest.raises(RuntimeError), subscription.locked() as row:
            row.status = Subscription.Status.UNPAID
            raise RuntimeError("boom")

        subscription.refresh_from_db()
        assert subscription.status == Subscription.Status.ACTIVE
        assert subscription.version == 0


@pytest.mark.django_db
class TestSubscriptionQuerySet:
    """Tests for queryset filters mirroring the predicates."""

    def test_active_excludes_inactive_and_ended(self) -> None:
        """Should return only subscriptions that grant access."""
        now = timezone.now()
        active = SubscriptionFactory.create(status="active")
        grace = SubscriptionFactory.create(status="active", ends_at=now + timedelta(days=1))
        SubscriptionFactory.create(status="active", ends_at=now - timedelta(days=1))
        SubscriptionFactory.create(status="incomplete")
        SubscriptionFactory.create(status="unpaid")
        past_due = SubscriptionFactory.create(status="past_due")

        assert set(Subscription.objects.active(STRICT)) == {active, grace}
        assert set(Subscription.objects.active(LENIENT)) == {active, grace, past_due}

    def test_trial_and_cancellation_filters(self) -> None:
        """Should split subscriptions by trial and cancellation state."""
        now = timezone.now()
        trialing = SubscriptionFactory.create(trial_ends_at=now + timedelta(days=5))
        grace = SubscriptionFactory.create(ends_at=now + timedelta(days=1))
        ended = SubscriptionFactory.create(ends_at=now - timedelta(days=1))
        plain = SubscriptionFactory.create()

        assert set(Subscription.objects.on_trial()) == {trialing}
        assert set(Subscription.objects.on_grace_period()) == {grace}
        assert set(Subscription.objects.ended()) == {ended}
        assert set(Subscription.objects.canceled()) == {grace, ended}
        assert set(Subscription.objects.not_canceled()) == {trialing, plain}
        assert set(Subscription.objects.recurring()) == {plain}

    def test_status_filters(self) -> None:
        """Should filter by incomplete and past_due status."""
        incomplete = SubscriptionFactory.create(status="incomplete")
        past_due = SubscriptionFactory.create(status="past_due")
        SubscriptionFactory.create(status="active")

        assert list(Subscription.objects.incomplete()) == [incomplete]
        assert list(Subscription.objects.past_due()) == [past_due]
