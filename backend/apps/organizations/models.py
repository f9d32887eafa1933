"""
Organizations models - the billable entity.
"""

from decimal import Decimal

from django.db import models
from django.utils import timezone

from apps.core.models import TimestampedModel


class Organization(TimestampedModel):
    """
    Account holder that owns subscriptions and can be charged.

    Stripe holds the customer record; this model keeps the customer ID, a
    display mirror of the default card, an optional generic (subscription-less)
    trial, and the tax rates the billing engine attaches to new payloads.
    """

    name = models.CharField(max_length=255)
    slug = models.SlugField(
        max_length=255,
        unique=True,
        help_text="URL-safe identifier, e.g. 'acme-corp'",
    )
    billing_email = models.EmailField(
        blank=True,
        help_text="Email sent to Stripe when the customer is created",
    )

    # Stripe integration (populated when org becomes a Stripe customer)
    stripe_customer_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        db_index=True,
        help_text="Stripe customer ID, e.g. 'cus_xxx'",
    )
    card_brand = models.CharField(
        max_length=50,
        blank=True,
        null=True,
        help_text="Brand of the default payment method, e.g. 'visa'",
    )
    card_last_four = models.CharField(
        max_length=4,
        blank=True,
        null=True,
        help_text="Last four digits of the default payment method",
    )
    trial_ends_at = models.DateTimeField(
        blank=True,
        null=True,
        help_text="Generic trial not attached to any subscription",
    )

    # Tax hooks (rates are managed in Stripe; we only reference them)
    default_tax_rates = models.JSONField(
        default=list,
        blank=True,
        help_text="Stripe tax rate IDs applied to every new subscription",
    )
    plan_tax_rates = models.JSONField(
        default=dict,
        blank=True,
        help_text="Map of plan ID to Stripe tax rate IDs for that plan's item",
    )
    tax_percentage = models.DecimalField(
        max_digits=6,
        decimal_places=4,
        default=Decimal("0"),
        help_text="Flat tax percentage, used only when no tax rates are set",
    )

    class Meta:
        ordering = ["-created_at"]

    def __str__(self) -> str:
        return self.name

    @property
    def has_stripe_id(self) -> bool:
        return bool(self.stripe_customer_id)

    @property
    def stripe_email(self) -> str | None:
        """Email used when creating the Stripe customer."""
        return self.billing_email or None

    def get_tax_rates(self) -> list[str]:
        """Tax rate IDs applied at subscription level."""
        return list(self.default_tax_rates or [])

    def get_plan_tax_rates(self) -> dict[str, list[str]]:
        """Tax rate IDs per plan, applied at item level."""
        return dict(self.plan_tax_rates or {})

    def get_tax_percentage(self) -> Decimal:
        return self.tax_percentage or Decimal("0")

    def tax_rates_for_plan(self, plan: str) -> list[str] | None:
        """
        Tax rate IDs for a single plan's item payload.

        Returns None when no per-plan rates are configured for the plan.
        """
        return self.get_plan_tax_rates().get(plan) or None

    @property
    def on_generic_trial(self) -> bool:
        return self.trial_ends_at is not None and self.trial_ends_at > timezone.now()
