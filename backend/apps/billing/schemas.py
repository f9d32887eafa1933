"""
Billing API schemas - request/response types for billing endpoints.
"""

from ninja import Schema


class PaymentResponse(Schema):
    """Payment confirmation details for the client-side payment page."""

    id: str
    amount: int  # Amount in the smallest currency unit
    currency: str  # e.g., 'usd'
    status: str  # 'requires_payment_method', 'requires_action', 'succeeded', ...
    client_secret: str | None  # Used by Stripe.js to confirm the payment
    stripe_key: str  # Publishable key for Stripe.js
    redirect: str | None  # Where to send the customer once the payment is confirmed
    requires_action: bool
    requires_payment_method: bool
