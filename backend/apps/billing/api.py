"""
Billing API endpoints.

Payment confirmation page data for payments that need customer action.
"""

import stripe
from django.http import HttpRequest
from ninja import Router
from ninja.errors import HttpError

from apps.billing.payment import Payment
from apps.billing.schemas import PaymentResponse
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger
from apps.core.schemas import ErrorResponse
from apps.core.url_validation import RedirectHostMismatchError, validate_redirect_url
from config.settings.base import settings

logger = get_logger(__name__)

router = Router(tags=["billing"])


@router.get(
    "/payments/{payment_id}",
    response={200: PaymentResponse, 403: ErrorResponse, 404: ErrorResponse},
    operation_id="getPayment",
    summary="Get payment confirmation details",
)
def get_payment(request: HttpRequest, payment_id: str, redirect: str | None = None) -> PaymentResponse:
    """
    Get the payment intent a customer must confirm.

    The optional redirect must point at the host serving this request.
    """
    try:
        redirect = validate_redirect_url(redirect, request.get_host())
    except RedirectHostMismatchError as e:
        logger.warning("payment_redirect_rejected", payment_id=payment_id)
        raise HttpError(403, str(e))

    try:
        payment = Payment.from_stripe(get_stripe().PaymentIntent.retrieve(payment_id))
    except stripe.InvalidRequestError:
        raise HttpError(404, "Payment not found")

    return PaymentResponse(
        id=payment.id,
        amount=payment.raw_amount,
        currency=payment.currency,
        status=payment.status,
        client_secret=payment.client_secret,
        stripe_key=settings.STRIPE_PUBLISHABLE_KEY,
        redirect=redirect,
        requires_action=payment.requires_action,
        requires_payment_method=payment.requires_payment_method,
    )
