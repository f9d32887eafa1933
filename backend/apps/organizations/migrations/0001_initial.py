from decimal import Decimal

from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Organization",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("name", models.CharField(max_length=255)),
                (
                    "slug",
                    models.SlugField(help_text="URL-safe identifier, e.g. 'acme-corp'", max_length=255, unique=True),
                ),
                (
                    "billing_email",
                    models.EmailField(
                        blank=True, help_text="Email sent to Stripe when the customer is created", max_length=254
                    ),
                ),
                (
                    "stripe_customer_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Stripe customer ID, e.g. 'cus_xxx'",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "card_brand",
                    models.CharField(
                        blank=True,
                        help_text="Brand of the default payment method, e.g. 'visa'",
                        max_length=50,
                        null=True,
                    ),
                ),
                (
                    "card_last_four",
                    models.CharField(
                        blank=True,
                        help_text="Last four digits of the default payment method",
                        max_length=4,
                        null=True,
                    ),
                ),
                (
                    "trial_ends_at",
                    models.DateTimeField(
                        blank=True, help_text="Generic trial not attached to any subscription", null=True
                    ),
                ),
                (
                    "default_tax_rates",
                    models.JSONField(
                        blank=True, default=list, help_text="Stripe tax rate IDs applied to every new subscription"
                    ),
                ),
                (
                    "plan_tax_rates",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Map of plan ID to Stripe tax rate IDs for that plan's item",
                    ),
                ),
                (
                    "tax_percentage",
                    models.DecimalField(
                        decimal_places=4,
                        default=Decimal("0"),
                        help_text="Flat tax percentage, used only when no tax rates are set",
                        max_digits=6,
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
            },
        ),
    ]
