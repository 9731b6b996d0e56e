from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from repairdesk.service_sheet.snapshot import SnapshotItem


CENT = Decimal("0.01")
HUNDRED = Decimal("100")
ZERO = Decimal("0")

SUBSCRIPTION_SERVICES_PCT = Decimal("10")
SUBSCRIPTION_PARTS_PCT = Decimal("5")

PRICED_TYPES = {"service", "part"}


@dataclass(frozen=True, slots=True)
class SheetTotals:
    subtotal: Decimal
    items_discount: Decimal
    global_discount: Decimal
    urgent_amount: Decimal
    subscription_discount: Decimal
    total: Decimal

    @property
    def total_discount(self) -> Decimal:
        return self.items_discount + self.global_discount

    def as_payload(self) -> dict[str, str]:
        return {
            "subtotal": str(self.subtotal),
            "items_discount": str(self.items_discount),
            "global_discount": str(self.global_discount),
            "total_discount": str(self.total_discount),
            "urgent_amount": str(self.urgent_amount),
            "subscription_discount": str(self.subscription_discount),
            "total": str(self.total),
        }


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def clamp_pct(value: Decimal | None) -> Decimal:
    if value is None:
        return ZERO
    return min(HUNDRED, max(ZERO, Decimal(value)))


def compute_totals(
    items: Iterable[SnapshotItem],
    *,
    global_discount_pct: Decimal = ZERO,
    subscription_type: str | None = None,
    urgent_markup_pct: Decimal = Decimal("30"),
) -> SheetTotals:
    """Sheet totals for the audit payload.

    Only service and part lines are priced. The global discount applies to
    each line after its own discount, and the urgent markup applies to an
    urgent line after both discounts.
    """
    global_pct = clamp_pct(global_discount_pct)
    markup_pct = max(ZERO, Decimal(urgent_markup_pct))

    subtotal = ZERO
    items_discount = ZERO
    global_discount = ZERO
    urgent_amount = ZERO
    services_after_global = ZERO
    parts_after_global = ZERO

    for item in items:
        if item.type not in PRICED_TYPES:
            continue
        gross = Decimal(item.qty) * item.price
        line_discount = gross * clamp_pct(item.discount_pct) / HUNDRED
        net = gross - line_discount
        line_global = net * global_pct / HUNDRED
        after_global = net - line_global

        subtotal += gross
        items_discount += line_discount
        global_discount += line_global
        if item.urgent:
            urgent_amount += after_global * markup_pct / HUNDRED
        if item.type == "service":
            services_after_global += after_global
        else:
            parts_after_global += after_global

    subscription_discount = ZERO
    if subscription_type in ("services", "both"):
        subscription_discount += services_after_global * SUBSCRIPTION_SERVICES_PCT / HUNDRED
    if subscription_type in ("parts", "both"):
        subscription_discount += parts_after_global * SUBSCRIPTION_PARTS_PCT / HUNDRED

    total = subtotal - (items_discount + global_discount) + urgent_amount - subscription_discount
    return SheetTotals(
        subtotal=quantize_money(subtotal),
        items_discount=quantize_money(items_discount),
        global_discount=quantize_money(global_discount),
        urgent_amount=quantize_money(urgent_amount),
        subscription_discount=quantize_money(subscription_discount),
        total=quantize_money(max(ZERO, total)),
    )
