"""
Invoice services.

Exposes raw invoice values only (amounts in the smallest currency unit, tax
percentages as Stripe reports them); rendering and currency formatting are
left to the caller.
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import stripe

from apps.billing.customers import assert_customer_exists, preferred_currency
from apps.billing.exceptions import InvalidInvoiceError
from apps.billing.gateway import from_timestamp
from apps.billing.payment import Payment
from apps.billing.stripe_client import get_stripe
from apps.core.logging import get_logger
from apps.organizations.models import Organization

logger = get_logger(__name__)

# Tax rates are only ids unless expanded on the lines and the totals
TAX_RATE_EXPANSIONS = ["lines.data.tax_amounts.tax_rate", "total_tax_amounts.tax_rate"]


def _tax_rate(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {"id": value}


@dataclass(frozen=True)
class Tax:
    """One tax total of an invoice."""

    amount: int
    currency: str
    inclusive: bool
    tax_rate_id: str | None
    percentage: float | None = None
    display_name: str | None = None

    @classmethod
    def from_stripe(cls, tax_amount: Mapping[str, Any], currency: str) -> "Tax":
        tax_rate = _tax_rate(tax_amount.get("tax_rate"))
        return cls(
            amount=int(tax_amount.get("amount") or 0),
            currency=currency,
            inclusive=bool(tax_amount.get("inclusive")),
            tax_rate_id=tax_rate.get("id"),
            percentage=tax_rate.get("percentage"),
            display_name=tax_rate.get("display_name"),
        )


@dataclass(frozen=True)
class InvoiceLineItem:
    """
    One line of an invoice.

    Tax percentages come from the applied tax amounts for taxable customers
    and from the configured tax rates for exempt ones, where no tax is
    actually charged.
    """

    id: str | None
    type: str
    amount: int
    currency: str
    description: str | None
    quantity: int | None
    plan: str | None
    proration: bool
    period_start: datetime | None
    period_end: datetime | None
    inclusive_tax_percentage: float
    exclusive_tax_percentage: float
    has_tax_rates: bool

    @classmethod
    def from_stripe(cls, item: Mapping[str, Any], tax_exempt: bool) -> "InvoiceLineItem":
        if tax_exempt:
            rates = [_tax_rate(rate) for rate in item.get("tax_rates") or []]
        else:
            rates = [
                {**_tax_rate(amount.get("tax_rate")), "inclusive": amount.get("inclusive")}
                for amount in item.get("tax_amounts") or []
            ]

        def percentage(inclusive: bool) -> float:
            return sum(rate.get("percentage") or 0 for rate in rates if bool(rate.get("inclusive")) == inclusive)

        period = item.get("period") or {}
        is_subscription = item.get("type") == "subscription"
        price = item.get("price") or item.get("plan") or {}

        return cls(
            id=item.get("id"),
            type=item.get("type") or "",
            amount=int(item.get("amount") or 0),
            currency=item.get("currency") or "",
            description=item.get("description"),
            quantity=item.get("quantity"),
            plan=price.get("id") if isinstance(price, Mapping) else price,
            proration=bool(item.get("proration")),
            period_start=from_timestamp(period.get("start")) if is_subscription else None,
            period_end=from_timestamp(period.get("end")) if is_subscription else None,
            inclusive_tax_percentage=percentage(True),
            exclusive_tax_percentage=percentage(False),
            has_tax_rates=bool(rates),
        )

    @property
    def is_subscription(self) -> bool:
        return self.type == "subscription"

    @property
    def has_both_inclusive_and_exclusive_tax(self) -> bool:
        return self.inclusive_tax_percentage > 0 and self.exclusive_tax_percentage > 0


@dataclass(frozen=True)
class Invoice:
    """A Stripe invoice that belongs to the organization's customer."""

    id: str | None
    customer: str
    status: str | None
    currency: str
    total: int
    subtotal: int
    starting_balance: int
    paid: bool
    created: datetime | None
    coupon: str | None = None
    owner: Organization | None = field(default=None, repr=False, compare=False)
    raw: Mapping[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_stripe(cls, org: Organization, invoice: Mapping[str, Any]) -> "Invoice":
        """
        Raises:
            InvalidInvoiceError: The invoice belongs to another customer
        """
        if invoice.get("customer") != org.stripe_customer_id:
            raise InvalidInvoiceError.invalid_owner(invoice.get("id"), org)

        discount = invoice.get("discount") or {}
        coupon = (discount.get("coupon") or {}).get("id")

        return cls(
            # Upcoming invoice previews have no id
            id=invoice.get("id"),
            customer=invoice["customer"],
            status=invoice.get("status"),
            currency=invoice.get("currency") or "",
            total=int(invoice.get("total") or 0),
            subtotal=int(invoice.get("subtotal") or 0),
            starting_balance=int(invoice.get("starting_balance") or 0),
            paid=invoice.get("status") == "paid" or bool(invoice.get("paid")),
            created=from_timestamp(invoice.get("created")),
            coupon=coupon,
            owner=org,
            raw=invoice,
        )

    @property
    def raw_total(self) -> int:
        """Amount paid or to be paid, including any starting balance."""
        return self.total + self.starting_balance

    @property
    def has_starting_balance(self) -> bool:
        return self.starting_balance < 0

    # Discounts

    @property
    def _coupon(self) -> Mapping[str, Any]:
        return (self.raw.get("discount") or {}).get("coupon") or {}

    @property
    def discount_is_percentage(self) -> bool:
        return bool(self._coupon.get("percent_off"))

    @property
    def percent_off(self) -> float:
        return self._coupon.get("percent_off") or 0

    @property
    def amount_off(self) -> int:
        return int(self._coupon.get("amount_off") or 0)

    @property
    def raw_discount(self) -> int:
        if not self.raw.get("discount"):
            return 0
        if self.discount_is_percentage:
            return round(self.subtotal * self.percent_off / 100)
        return self.amount_off

    @property
    def has_discount(self) -> bool:
        return self.raw_discount > 0

    # Taxes

    @property
    def tax(self) -> int:
        return int(self.raw.get("tax") or 0)

    @property
    def is_not_tax_exempt(self) -> bool:
        return self.raw.get("customer_tax_exempt") == "none"

    @property
    def is_tax_exempt(self) -> bool:
        return self.raw.get("customer_tax_exempt") == "exempt"

    @property
    def reverse_charge_applies(self) -> bool:
        return self.raw.get("customer_tax_exempt") == "reverse"

    @property
    def taxes(self) -> list[Tax]:
        """Tax totals, inclusive ones first. Use `with_tax_rates()` for percentages and names."""
        amounts = sorted(
            self.raw.get("total_tax_amounts") or [],
            key=lambda amount: bool(amount.get("inclusive")),
            reverse=True,
        )
        return [Tax.from_stripe(amount, self.currency) for amount in amounts]

    @property
    def has_tax(self) -> bool:
        return any(item.has_tax_rates for item in self.line_items())

    # Lines

    def line_items(self) -> list[InvoiceLineItem]:
        """Every line of the invoice, fetching further pages when the embedded list is truncated."""
        lines = self.raw.get("lines") or {}
        data: Iterable[Mapping[str, Any]] = lines.get("data") or []

        if lines.get("has_more") and self.id:
            data = get_stripe().Invoice.list_lines(
                self.id, limit=100, expand=["data.tax_amounts.tax_rate"]
            ).auto_paging_iter()

        # Only customers who actually pay tax get tax amounts
        tax_exempt = not self.is_not_tax_exempt
        return [InvoiceLineItem.from_stripe(item, tax_exempt) for item in data]

    @property
    def invoice_items(self) -> list[InvoiceLineItem]:
        return [item for item in self.line_items() if item.type == "invoiceitem"]

    @property
    def subscriptions(self) -> list[InvoiceLineItem]:
        return [item for item in self.line_items() if item.is_subscription]

    # Gateway operations

    def with_tax_rates(self) -> "Invoice":
        """Re-fetch the invoice with tax rates expanded on its lines and totals."""
        stripe_client = get_stripe()
        if self.id:
            expanded = stripe_client.Invoice.retrieve(self.id, expand=TAX_RATE_EXPANSIONS)
        else:
            expanded = stripe_client.Invoice.create_preview(customer=self.customer, expand=TAX_RATE_EXPANSIONS)
        return Invoice.from_stripe(self._owner(), expanded)

    def void(self, **options: Any) -> "Invoice":
        """
        Void a finalized invoice.

        Raises:
            ValueError: The invoice is an upcoming preview
        """
        if not self.id:
            raise ValueError("An upcoming invoice can't be voided")

        voided = get_stripe().Invoice.void_invoice(self.id, **options)
        logger.info("invoice_voided", invoice_id=self.id, customer_id=self.customer)
        return Invoice.from_stripe(self._owner(), voided)

    def _owner(self) -> Organization:
        if self.owner is None:
            raise ValueError("Invoice was built without its organization")
        return self.owner


def tab(org: Organization, description: str, amount: int, **options: Any) -> Any:
    """Add an invoice item to the customer's upcoming invoice."""
    assert_customer_exists(org)

    params = {
        "customer": org.stripe_customer_id,
        "amount": amount,
        "currency": preferred_currency(org),
        "description": description,
        **options,
    }
    return get_stripe().InvoiceItem.create(**params)


def invoice(org: Organization, **options: Any) -> Invoice | None:
    """
    Invoice the customer outside of the regular billing cycle.

    Automatically collected invoices are paid right away, others are sent.
    Returns None when Stripe has nothing to invoice.

    Raises:
        PaymentFailureError: The payment method was declined
        PaymentActionRequiredError: The customer must confirm the payment
    """
    assert_customer_exists(org)

    stripe_client = get_stripe()
    stripe_invoice = None

    try:
        stripe_invoice = stripe_client.Invoice.create(customer=org.stripe_customer_id, **options)

        if stripe_invoice.get("collection_method") == "charge_automatically":
            stripe_invoice = stripe_client.Invoice.pay(stripe_invoice["id"])
        else:
            stripe_invoice = stripe_client.Invoice.send_invoice(stripe_invoice["id"])
    except stripe.InvalidRequestError as e:
        logger.debug("invoice_not_created", organization_id=org.id, error=str(e))
        return None
    except stripe.CardError:
        if stripe_invoice is None or not stripe_invoice.get("payment_intent"):
            raise
        payment_intent = stripe_client.PaymentIntent.retrieve(
            stripe_invoice["payment_intent"],
            expand=["invoice.subscription"],
        )
        Payment.from_stripe(payment_intent).validate()
        return None

    logger.info("invoice_created", invoice_id=stripe_invoice["id"], organization_id=org.id)
    return Invoice.from_stripe(org, stripe_invoice)


def invoice_for(
    org: Organization,
    description: str,
    amount: int,
    tab_options: dict[str, Any] | None = None,
    invoice_options: dict[str, Any] | None = None,
) -> Invoice | None:
    """Add an invoice item and invoice it immediately."""
    tab(org, description, amount, **(tab_options or {}))
    return invoice(org, **(invoice_options or {}))


def upcoming_invoice(org: Organization) -> Invoice | None:
    if not org.has_stripe_id:
        return None

    try:
        preview = get_stripe().Invoice.create_preview(customer=org.stripe_customer_id)
    except stripe.InvalidRequestError:
        return None

    return Invoice.from_stripe(org, preview)


def find_invoice(org: Organization, invoice_id: str) -> Invoice | None:
    """Look up an invoice; any retrieval failure counts as not found."""
    try:
        stripe_invoice = get_stripe().Invoice.retrieve(invoice_id)
    except stripe.StripeError:
        return None

    return Invoice.from_stripe(org, stripe_invoice)


def invoices(org: Organization, include_pending: bool = False, **params: Any) -> list[Invoice]:
    """The customer's invoices, newest first. Unpaid ones only with include_pending."""
    if not org.has_stripe_id:
        return []

    params = {"limit": 24, **params}
    result = get_stripe().Invoice.list(customer=org.stripe_customer_id, **params)

    found = [Invoice.from_stripe(org, stripe_invoice) for stripe_invoice in result["data"]]
    return [item for item in found if item.paid or include_pending]
