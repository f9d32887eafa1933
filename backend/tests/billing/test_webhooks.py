"""
Tests for Stripe webhook handler.

Tests signature verification, event dispatching, idempotency and error handling.
"""

import json
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest
import stripe

from apps.core.models import ProcessedWebhook
from apps.core.webhooks import mark_webhook_processed

from .factories import create_single_plan_subscription, stripe_item, stripe_subscription

if TYPE_CHECKING:
    from django.test import Client


@pytest.fixture
def webhook_url() -> str:
    """Webhook endpoint URL (module-specific)."""
    return "/webhooks/stripe/"


def build_webhook_payload(event_type: str, data_object: dict, event_id: str = "evt_test_123") -> dict:
    """Build a Stripe webhook event payload."""
    return {
        "id": event_id,
        "type": event_type,
        "data": {"object": data_object},
    }


def post_event(client: "Client", webhook_url: str, payload: dict | str):
    return client.post(
        webhook_url,
        data=payload if isinstance(payload, str) else json.dumps(payload),
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE="test_signature",
    )


class TestStripeWebhookSignatureVerification:
    """Tests for webhook signature verification."""

    def test_missing_signature_header_returns_403(self, client: "Client", webhook_url: str) -> None:
        """Should return 403 when Stripe-Signature header is missing."""
        response = client.post(
            webhook_url,
            data=json.dumps({"type": "test"}),
            content_type="application/json",
        )

        assert response.status_code == 403

    @patch("apps.billing.webhooks.settings")
    def test_missing_webhook_secret_returns_500(
        self, mock_settings: MagicMock, client: "Client", webhook_url: str
    ) -> None:
        """Should return 500 when STRIPE_WEBHOOK_SECRET is not configured."""
        mock_settings.STRIPE_WEBHOOK_SECRET = ""

        response = post_event(client, webhook_url, {"type": "test"})

        assert response.status_code == 500

    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_invalid_signature_returns_403(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        """Should return 403 when signature verification fails."""
        mock_construct.side_effect = stripe.SignatureVerificationError("Invalid signature", "sig_header")

        response = post_event(client, webhook_url, {"type": "test"})

        assert response.status_code == 403

    @pytest.mark.django_db
    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_verifies_with_configured_secret(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        """Should verify with the webhook secret and tolerance from settings."""
        mock_construct.return_value = build_webhook_payload("invoice.paid", {"id": "in_1"})

        post_event(client, webhook_url, {"type": "invoice.paid"})

        args, kwargs = mock_construct.call_args
        assert args[1] == "test_signature"
        assert args[2] == "whsec_test"
        assert kwargs["tolerance"] == 300

    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_invalid_payload_is_acknowledged(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        """Should return 200 with an empty body when the payload isn't JSON."""
        mock_construct.side_effect = ValueError("Invalid payload")

        response = post_event(client, webhook_url, "invalid json")

        assert response.status_code == 200
        assert response.content == b""


@pytest.mark.django_db
class TestStripeWebhookEventDispatching:
    """Tests for webhook event dispatching to handlers."""

    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_subscription_updated_event(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        """Should reconcile the subscription and acknowledge with the handled body."""
        subscription = create_single_plan_subscription(plan="price_basic")
        data = stripe_subscription(
            subscription.stripe_subscription_id,
            customer=subscription.owner.stripe_customer_id,
            status="past_due",
            items=[stripe_item("price_pro")],
        )
        mock_construct.return_value = build_webhook_payload("customer.subscription.updated", data)

        response = post_event(client, webhook_url, mock_construct.return_value)

        assert response.status_code == 200
        assert response.content == b"Webhook Handled"
        subscription.refresh_from_db()
        assert subscription.status == "past_due"
        assert subscription.stripe_plan == "price_pro"

    @patch("apps.billing.webhooks.handle_event")
    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_marks_event_processed(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        mock_handle: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        mock_construct.return_value = build_webhook_payload("customer.deleted", {"id": "cus_1"}, event_id="evt_once")
        mock_handle.return_value = True

        post_event(client, webhook_url, mock_construct.return_value)

        assert ProcessedWebhook.objects.filter(source="stripe", event_id="evt_once").exists()

    @patch("apps.billing.webhooks.handle_event")
    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_duplicate_event_skipped(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        mock_handle: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        """Should acknowledge a redelivered event without handling it again."""
        mark_webhook_processed("stripe", "evt_dup")
        mock_construct.return_value = build_webhook_payload("customer.updated", {"id": "cus_1"}, event_id="evt_dup")

        response = post_event(client, webhook_url, mock_construct.return_value)

        assert response.status_code == 200
        assert response.content == b"Webhook Handled"
        mock_handle.assert_not_called()

    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_unhandled_event_returns_empty_200(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        """Should acknowledge unhandled event kinds with an empty body."""
        mock_construct.return_value = build_webhook_payload("invoice.paid", {"id": "in_1"}, event_id="evt_unhandled")

        response = post_event(client, webhook_url, mock_construct.return_value)

        assert response.status_code == 200
        assert response.content == b""
        assert not ProcessedWebhook.objects.filter(event_id="evt_unhandled").exists()

    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_malformed_event_is_acknowledged(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        """Should return 200 when the event has no data object."""
        mock_construct.return_value = {"id": "evt_bad", "type": "customer.subscription.updated"}

        response = post_event(client, webhook_url, mock_construct.return_value)

        assert response.status_code == 200
        assert response.content == b""

    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_malformed_subscription_is_acknowledged(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        """Should return 200 when the subscription object can't be decoded."""
        mock_construct.return_value = build_webhook_payload("customer.subscription.updated", {"status": "active"})

        response = post_event(client, webhook_url, mock_construct.return_value)

        assert response.status_code == 200

    @patch("apps.billing.webhooks.handle_event")
    @patch("apps.billing.webhooks.stripe.Webhook.construct_event")
    @patch("apps.billing.webhooks.get_stripe")
    def test_handler_exception_returns_500(
        self,
        mock_get_stripe: MagicMock,
        mock_construct: MagicMock,
        mock_handle: MagicMock,
        client: "Client",
        webhook_url: str,
    ) -> None:
        """Should return 500 and leave the event unmarked so Stripe retries."""
        mock_construct.return_value = build_webhook_payload("customer.updated", {"id": "cus_1"}, event_id="evt_boom")
        mock_handle.side_effect = RuntimeError("database unavailable")

        response = post_event(client, webhook_url, mock_construct.return_value)

        assert response.status_code == 500
        assert not ProcessedWebhook.objects.filter(event_id="evt_boom").exists()

    def test_get_not_allowed(self, client: "Client", webhook_url: str) -> None:
        response = client.get(webhook_url)

        assert response.status_code == 405
