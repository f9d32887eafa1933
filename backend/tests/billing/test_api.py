"""
Tests for billing API endpoints.
"""

from unittest.mock import MagicMock, patch

import pytest
import stripe
from django.test import Client, RequestFactory
from ninja.errors import HttpError

from apps.billing.api import get_payment

from .factories import stripe_payment_intent


class TestGetPayment:
    """Tests for get_payment endpoint."""

    @patch("apps.billing.api.get_stripe")
    def test_returns_payment_details(self, mock_get_stripe: MagicMock, request_factory: RequestFactory) -> None:
        """Should return the intent status, client secret and publishable key."""
        mock_get_stripe.return_value.PaymentIntent.retrieve.return_value = stripe_payment_intent(
            "requires_action", intent_id="pi_123", amount=2500
        )
        request = request_factory.get("/api/v1/billing/payments/pi_123")

        result = get_payment(request, "pi_123", redirect="http://testserver/billing")

        mock_get_stripe.return_value.PaymentIntent.retrieve.assert_called_once_with("pi_123")
        assert result.id == "pi_123"
        assert result.amount == 2500
        assert result.client_secret == "pi_123_secret"
        assert result.stripe_key == "pk_test_dummy"
        assert result.redirect == "http://testserver/billing"
        assert result.requires_action is True
        assert result.requires_payment_method is False

    @patch("apps.billing.api.get_stripe")
    def test_without_redirect(self, mock_get_stripe: MagicMock, request_factory: RequestFactory) -> None:
        mock_get_stripe.return_value.PaymentIntent.retrieve.return_value = stripe_payment_intent(
            "requires_payment_method"
        )
        request = request_factory.get("/api/v1/billing/payments/pi_test")

        result = get_payment(request, "pi_test")

        assert result.redirect is None
        assert result.requires_payment_method is True

    @patch("apps.billing.api.get_stripe")
    def test_foreign_redirect_returns_403(self, mock_get_stripe: MagicMock, request_factory: RequestFactory) -> None:
        """Should refuse redirects to another host before calling Stripe."""
        request = request_factory.get("/api/v1/billing/payments/pi_test")

        with pytest.raises(HttpError) as exc_info:
            get_payment(request, "pi_test", redirect="https://evil.example.com/phish")

        assert exc_info.value.status_code == 403
        mock_get_stripe.assert_not_called()

    @patch("apps.billing.api.get_stripe")
    def test_unknown_payment_returns_404(self, mock_get_stripe: MagicMock, request_factory: RequestFactory) -> None:
        mock_get_stripe.return_value.PaymentIntent.retrieve.side_effect = stripe.InvalidRequestError(
            "No such payment_intent", "id"
        )
        request = request_factory.get("/api/v1/billing/payments/pi_missing")

        with pytest.raises(HttpError) as exc_info:
            get_payment(request, "pi_missing")

        assert exc_info.value.status_code == 404


class TestRouting:
    @patch("apps.billing.api.get_stripe")
    def test_payment_endpoint_is_mounted(self, mock_get_stripe: MagicMock, api_client: Client) -> None:
        mock_get_stripe.return_value.PaymentIntent.retrieve.return_value = stripe_payment_intent("succeeded")

        response = api_client.get("/api/v1/billing/payments/pi_test")

        assert response.status_code == 200
        assert response.json()["status"] == "succeeded"

    def test_foreign_redirect_over_http(self, api_client: Client) -> None:
        response = api_client.get("/api/v1/billing/payments/pi_test", {"redirect": "https://evil.example.com"})

        assert response.status_code == 403
        assert response.json() == {"detail": "Redirect host mismatch."}

    def test_health(self, api_client: Client) -> None:
        response = api_client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
