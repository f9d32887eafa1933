"""
Shared pytest fixtures for all tests.

Factories
---------
Import factories directly from their modules:

    from tests.organizations.factories import OrganizationFactory
    from tests.billing.factories import SubscriptionFactory, create_single_plan_subscription

Stripe
------
Gateway calls are never made in tests. Modules that call a single Stripe
API are tested by patching `get_stripe` in the module under test. Flows that
cross several billing modules (engine, builder, reconciliation) use the
`mock_stripe` fixture, which replaces the module returned by every
`get_stripe()` call. Mocked responses are plain dicts, the same mapping
interface Stripe objects expose.

Example usage:

    @pytest.mark.django_db
    def test_something(mock_stripe):
        mock_stripe.Subscription.modify.return_value = stripe_subscription("sub_1")
"""

from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import pytest
from django.test import Client, RequestFactory


@pytest.fixture
def request_factory() -> RequestFactory:
    """
    Django request factory for unit testing views.

    Use this when you need to test view functions directly without going through
    the full HTTP stack.
    """
    return RequestFactory()


@pytest.fixture
def api_client() -> Client:
    """
    Django test client for full HTTP request/response cycle tests.

    Example:
        def test_api_returns_200(api_client):
            response = api_client.get("/api/v1/health")
            assert response.status_code == 200
    """
    return Client()


@pytest.fixture
def mock_stripe() -> Iterator[MagicMock]:
    """
    Replace the Stripe module handed out by get_stripe().

    Exception classes stay real so `except stripe.CardError` still matches
    errors raised from side effects.
    """
    with patch("apps.billing.stripe_client.stripe") as mocked:
        yield mocked
