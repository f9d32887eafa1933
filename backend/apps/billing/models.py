"""
Billing models - local mirrors of Stripe subscriptions and their items.

Stripe is the source of truth for subscription state. These rows are a
cache kept convergent by the subscription engine and by webhook
reconciliation; both write through `Subscription.locked()`.
"""

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from django.db import models, transaction
from django.db.models import Q
from django.utils import timezone

from apps.billing.policy import BillingPolicy
from apps.core.models import TimestampedModel
from apps.organizations.models import Organization

if TYPE_CHECKING:
    from apps.billing.gateway import RemoteItem


class SubscriptionQuerySet(models.QuerySet):
    """Filters mirroring the Subscription predicates."""

    def incomplete(self) -> "SubscriptionQuerySet":
        return self.filter(status=Subscription.Status.INCOMPLETE)

    def past_due(self) -> "SubscriptionQuerySet":
        return self.filter(status=Subscription.Status.PAST_DUE)

    def on_trial(self) -> "SubscriptionQuerySet":
        return self.filter(trial_ends_at__gt=timezone.now())

    def not_on_trial(self) -> "SubscriptionQuerySet":
        return self.filter(Q(trial_ends_at__isnull=True) | Q(trial_ends_at__lte=timezone.now()))

    def on_grace_period(self) -> "SubscriptionQuerySet":
        return self.filter(ends_at__gt=timezone.now())

    def not_on_grace_period(self) -> "SubscriptionQuerySet":
        return self.filter(Q(ends_at__isnull=True) | Q(ends_at__lte=timezone.now()))

    def canceled(self) -> "SubscriptionQuerySet":
        return self.filter(ends_at__isnull=False)

    def not_canceled(self) -> "SubscriptionQuerySet":
        return self.filter(ends_at__isnull=True)

    def ended(self) -> "SubscriptionQuerySet":
        return self.filter(ends_at__lte=timezone.now())

    def recurring(self) -> "SubscriptionQuerySet":
        return self.not_on_trial().not_canceled()

    def active(self, policy: BillingPolicy) -> "SubscriptionQuerySet":
        excluded = list(Subscription.INACTIVE_STATUSES)
        if not policy.past_due_is_active:
            excluded.append(Subscription.Status.PAST_DUE)
        return self.filter(Q(ends_at__isnull=True) | Q(ends_at__gt=timezone.now())).exclude(
            status__in=excluded
        )


class Subscription(TimestampedModel):
    """
    Local mirror of one Stripe subscription.

    A subscription is either single-plan (`stripe_plan` and `quantity` set,
    exactly one item) or multi-plan (`stripe_plan` is null, the items carry
    the plans and quantities).
    """

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past Due"
        CANCELED = "canceled", "Canceled"
        INCOMPLETE = "incomplete", "Incomplete"
        INCOMPLETE_EXPIRED = "incomplete_expired", "Incomplete Expired"
        TRIALING = "trialing", "Trialing"
        UNPAID = "unpaid", "Unpaid"

    # Statuses that are never active regardless of policy
    INACTIVE_STATUSES = (Status.INCOMPLETE, Status.INCOMPLETE_EXPIRED, Status.UNPAID)

    owner = models.ForeignKey(
        Organization,
        on_delete=models.CASCADE,
        related_name="subscriptions",
    )
    name = models.CharField(
        max_length=255,
        default="default",
        help_text="Caller-chosen label, e.g. 'default'",
    )
    stripe_subscription_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Stripe subscription ID, e.g. 'sub_xxx'",
    )
    # Any other Stripe status string is stored as-is
    status = models.CharField(
        max_length=50,
        choices=Status.choices,
        default=Status.INCOMPLETE,
        db_index=True,
        help_text="Subscription status from Stripe",
    )
    stripe_plan = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Plan ID when single-plan, null when multi-plan",
    )
    quantity = models.PositiveIntegerField(
        blank=True,
        null=True,
        help_text="Quantity when single-plan",
    )
    trial_ends_at = models.DateTimeField(blank=True, null=True)
    ends_at = models.DateTimeField(
        blank=True,
        null=True,
        help_text="Scheduled or actual end after cancellation",
    )
    version = models.PositiveIntegerField(
        default=0,
        help_text="Bumped on every locked write",
    )
    remote_updated_at = models.DateTimeField(
        blank=True,
        null=True,
        help_text="Creation time of the newest Stripe state applied by reconciliation",
    )

    objects = SubscriptionQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["owner", "name"], name="billing_sub_owner_name_idx"),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.stripe_subscription_id}) - {self.status}"

    @contextmanager
    def locked(self) -> Iterator["Subscription"]:
        """
        Yield a fresh copy of this row under a row lock.

        Changes made to the yielded row are saved with a bumped version when
        the block exits, and this instance is refreshed afterwards. Never
        call Stripe inside the block.
        """
        with transaction.atomic():
            row = type(self).objects.select_for_update().get(pk=self.pk)
            yield row
            row.version += 1
            row.save()
        self.refresh_from_db()

    # Plan shape

    @property
    def has_multiple_plans(self) -> bool:
        return self.stripe_plan is None

    @property
    def has_single_plan(self) -> bool:
        return not self.has_multiple_plans

    def has_plan(self, plan: str) -> bool:
        if self.has_multiple_plans:
            return self.items.filter(stripe_plan=plan).exists()
        return self.stripe_plan == plan

    def find_item_or_fail(self, plan: str) -> "SubscriptionItem":
        """Raises SubscriptionItem.DoesNotExist when the plan isn't on this subscription."""
        return self.items.get(stripe_plan=plan)

    def sync_items(self, remote_items: Iterable["RemoteItem"]) -> None:
        """
        Make the local items exactly match the remote item set.

        Items missing locally are created, items absent remotely are deleted,
        and quantities are overwritten.
        """
        remote_items = list(remote_items)
        self.items.exclude(stripe_id__in=[item.id for item in remote_items]).delete()
        for item in remote_items:
            self.items.update_or_create(
                stripe_id=item.id,
                defaults={"stripe_plan": item.plan, "quantity": item.quantity},
            )

    # Status predicates

    @property
    def is_incomplete(self) -> bool:
        return self.status == self.Status.INCOMPLETE

    @property
    def is_past_due(self) -> bool:
        return self.status == self.Status.PAST_DUE

    @property
    def has_incomplete_payment(self) -> bool:
        return self.is_past_due or self.is_incomplete

    @property
    def on_trial(self) -> bool:
        return self.trial_ends_at is not None and self.trial_ends_at > timezone.now()

    @property
    def on_grace_period(self) -> bool:
        return self.ends_at is not None and self.ends_at > timezone.now()

    @property
    def is_canceled(self) -> bool:
        return self.ends_at is not None

    @property
    def has_ended(self) -> bool:
        return self.is_canceled and not self.on_grace_period

    @property
    def is_recurring(self) -> bool:
        return not self.on_trial and not self.is_canceled

    def is_active(self, policy: BillingPolicy) -> bool:
        """
        Whether the subscription should grant access.

        Raw Stripe status is not enough: a canceled subscription stays active
        through its grace period, and past_due depends on the policy.
        """
        if self.ends_at is not None and not self.on_grace_period:
            return False
        if self.status in self.INACTIVE_STATUSES:
            return False
        return self.status != self.Status.PAST_DUE or policy.past_due_is_active

    def is_valid(self, policy: BillingPolicy) -> bool:
        """Active, on trial, or within the grace period."""
        return self.is_active(policy) or self.on_trial or self.on_grace_period


class SubscriptionItem(TimestampedModel):
    """One (plan, quantity) line of a subscription."""

    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.CASCADE,
        related_name="items",
    )
    stripe_id = models.CharField(
        max_length=255,
        db_index=True,
        help_text="Stripe subscription item ID, e.g. 'si_xxx'",
    )
    stripe_plan = models.CharField(
        max_length=255,
        help_text="Stripe price/plan ID, e.g. 'price_xxx'",
    )
    quantity = models.PositiveIntegerField(blank=True, null=True)

    class Meta:
        ordering = ["created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["subscription", "stripe_plan"],
                name="unique_subscription_plan",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.stripe_plan} x {self.quantity}"
