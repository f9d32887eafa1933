import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("organizations", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "name",
                    models.CharField(default="default", help_text="Caller-chosen label, e.g. 'default'", max_length=255),
                ),
                (
                    "stripe_subscription_id",
                    models.CharField(
                        db_index=True, help_text="Stripe subscription ID, e.g. 'sub_xxx'", max_length=255
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("canceled", "Canceled"),
                            ("incomplete", "Incomplete"),
                            ("incomplete_expired", "Incomplete Expired"),
                            ("trialing", "Trialing"),
                            ("unpaid", "Unpaid"),
                        ],
                        db_index=True,
                        default="incomplete",
                        help_text="Subscription status from Stripe",
                        max_length=50,
                    ),
                ),
                (
                    "stripe_plan",
                    models.CharField(
                        blank=True, help_text="Plan ID when single-plan, null when multi-plan", max_length=255, null=True
                    ),
                ),
                ("quantity", models.PositiveIntegerField(blank=True, help_text="Quantity when single-plan", null=True)),
                ("trial_ends_at", models.DateTimeField(blank=True, null=True)),
                (
                    "ends_at",
                    models.DateTimeField(blank=True, help_text="Scheduled or actual end after cancellation", null=True),
                ),
                ("version", models.PositiveIntegerField(default=0, help_text="Bumped on every locked write")),
                (
                    "owner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscriptions",
                        to="organizations.organization",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["owner", "name"], name="billing_sub_owner_name_idx")],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "stripe_id",
                    models.CharField(
                        db_index=True, help_text="Stripe subscription item ID, e.g. 'si_xxx'", max_length=255
                    ),
                ),
                (
                    "stripe_plan",
                    models.CharField(help_text="Stripe price/plan ID, e.g. 'price_xxx'", max_length=255),
                ),
                ("quantity", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="billing.subscription",
                    ),
                ),
            ],
            options={
                "ordering": ["created_at"],
                "constraints": [
                    models.UniqueConstraint(fields=("subscription", "stripe_plan"), name="unique_subscription_plan"),
                ],
            },
        ),
    ]
