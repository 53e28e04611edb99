"""
Shared pytest fixtures for all tests.

Factories
---------
Import factories directly from their module:

    from tests.billing.factories import UserFactory, SubscriptionFactory, InvoiceFactory

Example usage:

    @pytest.mark.django_db
    def test_something(mock_gateway):
        subscription = SubscriptionFactory.create(status=Subscription.Status.PAYMENT_PENDING)
        mock_gateway.get_order_payments.return_value = []
"""

from unittest.mock import MagicMock, patch

import pytest
from django.test import Client, RequestFactory

from apps.billing.gateway import GatewayCheckout, PaymentGateway
from tests.billing.factories import UserFactory


@pytest.fixture
def request_factory() -> RequestFactory:
    """
    Django request factory for unit testing views.

    Use this to call Django Ninja endpoint functions directly, without
    going through routing and authentication.

    Example:
        def test_endpoint(request_factory, user):
            request = request_factory.get("/api/v1/billing/entitlement")
            request.user = user
            result = get_entitlement_endpoint(request)
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
def user(db):
    return UserFactory.create()


@pytest.fixture
def logged_in_client(api_client: Client, user) -> Client:
    """Test client with a session for the `user` fixture."""
    api_client.force_login(user)
    return api_client


@pytest.fixture
def mock_gateway():
    """
    Replace the payment gateway everywhere billing looks it up.

    Payment listings default to empty, checkouts to one with no issued
    secret, and cancellations succeed.
    """
    gateway = MagicMock(spec=PaymentGateway)
    gateway.get_checkout.return_value = GatewayCheckout(order_id="")
    gateway.cancel_order.return_value = True
    gateway.cancel_incomplete_mandate.return_value = True
    gateway.get_order_payments.return_value = []
    gateway.get_subscription_payments.return_value = []

    with (
        patch("apps.billing.services.get_gateway", return_value=gateway),
        patch("apps.billing.reconciliation.get_gateway", return_value=gateway),
        patch("apps.billing.lifecycle.get_gateway", return_value=gateway),
    ):
        yield gateway
