"""
Stripe webhook handler.

Handles incoming webhooks from Stripe for subscription and customer events.
This is a separate view (not Django Ninja) for raw request handling
needed to verify Stripe signatures.
"""

import stripe
from django.http import HttpRequest, HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from apps.billing.exceptions import MalformedEventError
from apps.billing.reconciliation import WebhookEvent, handle_event
from apps.billing.stripe_client import get_stripe
from apps.core.logging import bind_contextvars, get_logger
from apps.core.webhooks import is_webhook_processed, mark_webhook_processed
from config.settings.base import settings

logger = get_logger(__name__)

WEBHOOK_SOURCE = "stripe"


def _handled() -> HttpResponse:
    return HttpResponse("Webhook Handled", content_type="text/plain", status=200)


@csrf_exempt
@require_POST
def stripe_webhook(request: HttpRequest) -> HttpResponse:
    """
    Handle Stripe webhook events.

    Verifies the signature before anything else, then dispatches to the
    reconciliation handlers. Payloads that can't be decoded are acknowledged
    so Stripe doesn't redeliver them forever.
    """
    payload = request.body
    sig_header = request.headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("stripe_webhook_missing_signature")
        return HttpResponse(status=403)

    if not settings.STRIPE_WEBHOOK_SECRET:
        logger.error("stripe_webhook_secret_not_configured")
        return HttpResponse(status=500)

    # Verify signature
    get_stripe()  # Ensure Stripe is configured
    try:
        raw_event = stripe.Webhook.construct_event(
            payload,
            sig_header,
            settings.STRIPE_WEBHOOK_SECRET,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
        )
    except stripe.SignatureVerificationError as e:
        logger.warning("stripe_webhook_invalid_signature", error=str(e))
        return HttpResponse(status=403)
    except ValueError as e:
        # Signature matched but the body isn't JSON
        logger.warning("stripe_webhook_invalid_payload", error=str(e))
        return HttpResponse(status=200)

    try:
        event = WebhookEvent.from_payload(raw_event)
    except MalformedEventError as e:
        logger.warning("stripe_webhook_malformed_event", error=str(e))
        return HttpResponse(status=200)

    bind_contextvars(stripe_event_id=event.id, stripe_event_type=event.type)
    logger.info("stripe_webhook_received", event_type=event.type)

    if event.id and is_webhook_processed(WEBHOOK_SOURCE, event.id):
        logger.info("stripe_webhook_duplicate", event_id=event.id)
        return _handled()

    try:
        handled = handle_event(event)
    except MalformedEventError as e:
        logger.warning("stripe_webhook_malformed_event", error=str(e))
        return HttpResponse(status=200)
    except Exception:
        logger.exception("stripe_webhook_handler_error")
        # Return 500 so Stripe will retry with exponential backoff
        return HttpResponse(status=500)

    if not handled:
        return HttpResponse(status=200)

    # Marked only after the handler succeeded, so a crash gets redelivered
    if event.id:
        mark_webhook_processed(WEBHOOK_SOURCE, event.id)

    return _handled()
