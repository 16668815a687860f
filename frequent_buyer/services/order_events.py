"""
Order and refund events as the loyalty engine sees them.

Parsed from Square order JSON (webhook payloads, order lookups and
catch-up searches). Money is in minor units.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, List, Dict, Any

from ..utils.dates import parse_timestamp


def _money(obj: Optional[Dict[str, Any]], default: Optional[int] = 0) -> Optional[int]:
    if not obj or obj.get('amount') is None:
        return default
    return int(obj['amount'])


def _quantity(value) -> int:
    # Square sends quantities as decimal strings ("2", "1.0")
    try:
        return int(float(value or 0))
    except (TypeError, ValueError):
        return 0


@dataclass
class LineItem:
    uid: Optional[str]
    variation_id: Optional[str]
    quantity: int
    unit_price_cents: int
    total_cents: int
    total_discount_cents: int = 0
    name: Optional[str] = None

    @property
    def is_free(self) -> bool:
        """Rung up at a positive price but totalled to zero."""
        return self.unit_price_cents > 0 and self.total_cents == 0

    @classmethod
    def from_square(cls, data: Dict[str, Any]) -> 'LineItem':
        base = _money(data.get('base_price_money'))
        return cls(
            uid=data.get('uid'),
            variation_id=data.get('catalog_object_id'),
            quantity=_quantity(data.get('quantity')),
            unit_price_cents=base,
            total_cents=_money(data.get('total_money'), default=base),
            total_discount_cents=_money(data.get('total_discount_money')),
            name=data.get('name'),
        )


@dataclass
class AppliedDiscount:
    uid: Optional[str]
    catalog_object_id: Optional[str]
    pricing_rule_id: Optional[str]
    name: Optional[str]
    applied_cents: int

    @classmethod
    def from_square(cls, data: Dict[str, Any]) -> 'AppliedDiscount':
        return cls(
            uid=data.get('uid'),
            catalog_object_id=data.get('catalog_object_id'),
            pricing_rule_id=data.get('pricing_rule_id'),
            name=data.get('name'),
            applied_cents=_money(data.get('applied_money')),
        )


@dataclass
class RefundLine:
    """One returned line; source_order_id is the order the units were bought on."""
    uid: str
    source_order_id: Optional[str]
    variation_id: Optional[str]
    quantity: int
    unit_price_cents: int = 0


@dataclass
class OrderEvent:
    order_id: str
    location_id: Optional[str] = None
    customer_id: Optional[str] = None
    state: Optional[str] = None
    occurred_at: Optional[datetime] = None
    line_items: List[LineItem] = field(default_factory=list)
    discounts: List[AppliedDiscount] = field(default_factory=list)
    refund_lines: List[RefundLine] = field(default_factory=list)
    tender_customer_ids: List[str] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def tender_customer_id(self) -> Optional[str]:
        return next((c for c in self.tender_customer_ids if c), None)

    @classmethod
    def from_square(cls, order: Dict[str, Any]) -> 'OrderEvent':
        refund_lines = []
        for ret in order.get('returns') or []:
            for item in ret.get('return_line_items') or []:
                refund_lines.append(RefundLine(
                    uid=item.get('uid'),
                    source_order_id=ret.get('source_order_id'),
                    variation_id=item.get('catalog_object_id'),
                    quantity=_quantity(item.get('quantity')),
                    unit_price_cents=_money(item.get('base_price_money')),
                ))

        return cls(
            order_id=order['id'],
            location_id=order.get('location_id'),
            customer_id=order.get('customer_id'),
            state=order.get('state'),
            occurred_at=parse_timestamp(order.get('closed_at') or order.get('created_at')),
            line_items=[LineItem.from_square(li) for li in order.get('line_items') or []],
            discounts=[AppliedDiscount.from_square(d) for d in order.get('discounts') or []],
            refund_lines=refund_lines,
            tender_customer_ids=[t.get('customer_id') for t in order.get('tenders') or [] if t.get('customer_id')],
            raw=order,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OrderEvent':
        """
        Build from the provider-neutral event shape:
        {orderId, customerId?, locationId?, lineItems: [{variationId, quantity,
        unitPriceMinorUnits}], refundLines?: [...], timestamp}
        """
        line_items = [
            LineItem(
                uid=li.get('uid'),
                variation_id=li.get('variationId'),
                quantity=int(li.get('quantity', 0)),
                unit_price_cents=int(li.get('unitPriceMinorUnits') or 0),
                total_cents=int(li.get('totalMinorUnits', (li.get('unitPriceMinorUnits') or 0) * int(li.get('quantity', 0)))),
                total_discount_cents=int(li.get('discountMinorUnits') or 0),
                name=li.get('name'),
            )
            for li in data.get('lineItems') or []
        ]
        refund_lines = [
            RefundLine(
                uid=rl['refundLineId'],
                source_order_id=rl.get('sourceOrderId', data['orderId']),
                variation_id=rl.get('variationId'),
                quantity=abs(int(rl.get('quantity', 0))),
                unit_price_cents=int(rl.get('unitPriceMinorUnits') or 0),
            )
            for rl in data.get('refundLines') or []
        ]
        return cls(
            order_id=data['orderId'],
            location_id=data.get('locationId'),
            customer_id=data.get('customerId'),
            occurred_at=parse_timestamp(data.get('timestamp')),
            line_items=line_items,
            refund_lines=refund_lines,
            raw=data,
        )
