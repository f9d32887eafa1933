"""
Tests for Stripe client configuration.
"""

from unittest.mock import MagicMock

from apps.billing.stripe_client import STRIPE_API_VERSION, get_stripe


class TestGetStripe:
    def test_configures_module(self, mock_stripe: MagicMock) -> None:
        """Should set the key, pinned API version and retries before returning."""
        client = get_stripe()

        assert client is mock_stripe
        assert mock_stripe.api_key == "sk_test_dummy"
        assert mock_stripe.api_version == STRIPE_API_VERSION
        assert mock_stripe.max_network_retries == 2
        mock_stripe.set_app_info.assert_called_once_with("billing-engine")
