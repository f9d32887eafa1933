"""
Typed projections of Stripe responses.

Gateway responses (and webhook payloads, which carry the same objects) are
decoded here into plain frozen dataclasses holding only the fields the engine
and the reconciliation handler read. Everything downstream works with these
instead of poking at raw Stripe objects.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from apps.billing.exceptions import MalformedEventError
from apps.billing.payment import Payment


def from_timestamp(value: int | None) -> datetime | None:
    """Convert a Stripe Unix timestamp into an aware datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def to_timestamp(value: datetime) -> int:
    """Convert an aware datetime into a Stripe Unix timestamp."""
    return int(value.timestamp())


def _mapping(value: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise MalformedEventError(f"Expected {what} to be an object")
    return value


def _object_id(value: Any) -> str | None:
    """Return the id of a possibly-expanded reference (`"price_x"` or `{"id": "price_x"}`)."""
    if isinstance(value, Mapping):
        return value.get("id")
    if isinstance(value, str):
        return value
    return None


@dataclass(frozen=True)
class RemoteItem:
    """One subscription item as Stripe reports it."""

    id: str
    plan: str
    quantity: int | None

    @classmethod
    def from_stripe(cls, item: Any) -> "RemoteItem":
        item = _mapping(item, "subscription item")
        # Price supersedes plan in newer API versions; both carry the same id
        plan = _object_id(item.get("price")) or _object_id(item.get("plan"))
        if not item.get("id") or not plan:
            raise MalformedEventError("Subscription item is missing its id or plan")
        quantity = item.get("quantity")
        return cls(
            id=item["id"],
            plan=plan,
            quantity=int(quantity) if quantity is not None else None,
        )


@dataclass(frozen=True)
class RemoteSubscription:
    """
    A Stripe subscription reduced to what local mirroring needs.

    `items` is None when the payload carried no item list at all (partial
    webhook payloads), as opposed to an empty tuple.
    """

    id: str
    customer: str | None
    status: str | None
    plan: str | None
    quantity: int | None
    items: tuple[RemoteItem, ...] | None
    trial_end: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    latest_payment_intent: Mapping[str, Any] | None

    @classmethod
    def from_stripe(cls, subscription: Any) -> "RemoteSubscription":
        subscription = _mapping(subscription, "subscription")

        if not subscription.get("id"):
            raise MalformedEventError("Subscription has no id")

        items: tuple[RemoteItem, ...] | None = None
        if subscription.get("items") is not None:
            data = _mapping(subscription["items"], "subscription item list").get("data") or []
            items = tuple(RemoteItem.from_stripe(item) for item in data)

        # Single-plan shortcut: top-level fields when present, else the lone item
        single = items[0] if items is not None and len(items) == 1 else None
        if "plan" in subscription:
            plan = _object_id(subscription.get("plan"))
        else:
            plan = single.plan if single else None

        if subscription.get("quantity") is not None:
            quantity = int(subscription["quantity"])
        else:
            quantity = single.quantity if single and plan else None

        # Period end moved under items/current_period in newer API versions
        current_period = subscription.get("current_period") or {}
        period_end_ts = subscription.get("current_period_end") or current_period.get("end")
        if period_end_ts is None and subscription.get("items") is not None:
            data = subscription["items"].get("data") or []
            if data and isinstance(data[0], Mapping):
                period_end_ts = data[0].get("current_period_end")

        latest_payment_intent = None
        latest_invoice = subscription.get("latest_invoice")
        if isinstance(latest_invoice, Mapping) and isinstance(
            latest_invoice.get("payment_intent"), Mapping
        ):
            latest_payment_intent = latest_invoice["payment_intent"]

        try:
            return cls(
                id=subscription["id"],
                customer=_object_id(subscription.get("customer")),
                status=subscription.get("status"),
                plan=plan,
                quantity=quantity,
                items=items,
                trial_end=from_timestamp(subscription.get("trial_end")),
                current_period_end=from_timestamp(period_end_ts),
                cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
                latest_payment_intent=latest_payment_intent,
            )
        except (TypeError, ValueError, OverflowError) as e:
            raise MalformedEventError(f"Invalid subscription payload: {e}") from e

    @property
    def item_plans(self) -> list[str]:
        return [item.plan for item in self.items or ()]

    def latest_payment(self) -> Payment | None:
        """Payment result of the latest invoice, when it was expanded."""
        if self.latest_payment_intent is None:
            return None
        return Payment.from_stripe(self.latest_payment_intent)
