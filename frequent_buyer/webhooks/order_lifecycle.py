"""
Order lifecycle webhook handlers.

Thin adapters from Square order and refund webhooks to order intake.
Signature verification and delivery deduplication happen upstream.
Handlers always acknowledge: loyalty failures are absorbed by intake
and queued for retry, and orders that cannot be fetched are recovered
by the catch-up reconciler.
"""
from flask import Blueprint, request, jsonify, current_app

from ..extensions import pos_clients
from ..models import Tenant
from ..services.order_events import OrderEvent
from ..services.order_intake import OrderIntakeService
from ..utils.exceptions import FrequentBuyerError

order_lifecycle_bp = Blueprint('order_lifecycle', __name__)


def get_tenant_from_merchant(merchant_id: str) -> Tenant:
    """Get tenant from Square merchant id."""
    if not merchant_id:
        return None
    return Tenant.query.filter_by(square_merchant_id=merchant_id, is_active=True).first()


def _fetch_order(tenant: Tenant, order_id: str):
    try:
        return pos_clients.for_tenant(tenant.id).retrieve_order(order_id)
    except FrequentBuyerError as e:
        current_app.logger.error(
            f"Could not fetch order {order_id} for tenant {tenant.id}; catch-up will recover it: {e.message}"
        )
        return None


@order_lifecycle_bp.route('/orders', methods=['POST'])
def handle_order_updated():
    """
    Handle order.created / order.updated webhooks.

    Payload carries either the full order under data.object.order or an
    order_updated stub (order_id + state); stubs are fetched when COMPLETED.
    """
    payload = request.get_json(silent=True) or {}
    tenant = get_tenant_from_merchant(payload.get('merchant_id'))
    if not tenant:
        return jsonify({'success': True, 'ignored': 'unknown merchant'})

    obj = (payload.get('data') or {}).get('object') or {}
    order = obj.get('order')
    if not order:
        stub = obj.get('order_updated') or obj.get('order_created') or {}
        if stub.get('state') != 'COMPLETED' or not stub.get('order_id'):
            return jsonify({'success': True, 'ignored': 'order not completed'})
        order = _fetch_order(tenant, stub['order_id'])
        if not order:
            return jsonify({'success': True, 'deferred': 'order fetch failed'})

    if order.get('state') != 'COMPLETED':
        return jsonify({'success': True, 'ignored': 'order not completed'})

    intake = OrderIntakeService(tenant.id)
    result = intake.process_order(OrderEvent.from_square(order), origin='webhook')
    current_app.logger.info(
        f"Loyalty order webhook tenant {tenant.id} order {order.get('id')}: "
        f"{result.get('reason') or 'processed'}"
    )
    return jsonify({'success': True, 'result': result})


@order_lifecycle_bp.route('/refunds', methods=['POST'])
def handle_refund_updated():
    """
    Handle refund.created / refund.updated webhooks.

    The refund's order is the return order; its return line items name
    the original order and variation of each refunded unit.
    """
    payload = request.get_json(silent=True) or {}
    tenant = get_tenant_from_merchant(payload.get('merchant_id'))
    if not tenant:
        return jsonify({'success': True, 'ignored': 'unknown merchant'})

    refund = ((payload.get('data') or {}).get('object') or {}).get('refund') or {}
    if refund.get('status') != 'COMPLETED':
        return jsonify({'success': True, 'ignored': 'refund not completed'})
    if not refund.get('order_id'):
        return jsonify({'success': True, 'ignored': 'refund has no order'})

    order = _fetch_order(tenant, refund['order_id'])
    if not order:
        return jsonify({'success': True, 'deferred': 'order fetch failed'})

    event = OrderEvent.from_square(order)
    if not event.refund_lines:
        return jsonify({'success': True, 'ignored': 'no returned items'})

    result = OrderIntakeService(tenant.id).process_refund(event)
    current_app.logger.info(
        f"Loyalty refund webhook tenant {tenant.id} refund {refund.get('id')}: "
        f"{result.get('reason') or 'processed'}"
    )
    return jsonify({'success': True, 'result': result})
