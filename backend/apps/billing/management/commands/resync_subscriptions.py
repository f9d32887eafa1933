"""
Management command to resync local subscriptions from Stripe.

Recovery path when a local write was lost after a successful Stripe call.
Usage: python manage.py resync_subscriptions [--subscription sub_xxx]
"""

import stripe
from django.core.management.base import BaseCommand, CommandError

from apps.billing.exceptions import BillingError
from apps.billing.models import Subscription
from apps.billing.services import resync_subscription
from config.settings.base import settings


class Command(BaseCommand):
    help = "Re-read subscriptions from Stripe and apply them to the local records"

    def add_arguments(self, parser):
        parser.add_argument(
            "--subscription",
            type=str,
            default=None,
            help="Only resync the subscription with this Stripe ID",
        )

    def handle(self, *args, **options):
        if not settings.STRIPE_SECRET_KEY:
            raise CommandError("STRIPE_SECRET_KEY not set. Add it to your .env file first.")

        if options["subscription"]:
            subscriptions = Subscription.objects.filter(stripe_subscription_id=options["subscription"])
            if not subscriptions.exists():
                raise CommandError(f"No local subscription with ID {options['subscription']}")
        else:
            # Ended subscriptions no longer change remotely
            subscriptions = Subscription.objects.exclude(pk__in=Subscription.objects.ended())

        synced = purged = failed = 0
        for subscription in subscriptions.order_by("pk"):
            try:
                result = resync_subscription(subscription)
            except (stripe.StripeError, BillingError) as e:
                failed += 1
                self.stderr.write(
                    self.style.ERROR(f"Failed to resync {subscription.stripe_subscription_id}: {e}")
                )
                continue

            if result is None:
                purged += 1
                self.stdout.write(
                    self.style.WARNING(f"Purged expired subscription {subscription.stripe_subscription_id}")
                )
            else:
                synced += 1

        self.stdout.write(self.style.SUCCESS(f"Resynced {synced}, purged {purged}, failed {failed}"))
