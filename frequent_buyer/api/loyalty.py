"""
Loyalty admin API.

Handles:
- Offer and qualifying variation management
- Reward listing and manual redemption
- Customer status and history
- Tenant loyalty settings and the audit trail
- Manual triggers for the scheduled sweeps
"""
from flask import Blueprint, request, jsonify, g, current_app

from ..extensions import pos_clients
from ..models import Reward, RewardStatus, FailedLoyaltyEvent
from ..services.offer_admin import OfferAdminService
from ..services.redemption_processor import RedemptionProcessor, RedemptionContext
from ..services.customer_summary import CustomerSummaryProjector
from ..services.settings_service import SettingsService
from ..services.audit_logger import AuditLogger
from ..services.expiration_service import ExpirationService
from ..services.pos_reward_sync import POSRewardSync
from ..services.catchup_reconciler import CatchupReconciler
from ..services.failed_event_retry import retry_failed_events
from ..services.order_events import OrderEvent
from ..services.order_intake import OrderIntakeService
from ..middleware.tenant_auth import require_tenant
from ..utils.errors import bad_request
from ..utils.exceptions import ValidationError, RewardNotFoundError

loyalty_bp = Blueprint('loyalty', __name__)


def _int_arg(name: str, default: int) -> int:
    value = request.args.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f"Query parameter '{name}' must be an integer", field=name)

# ==============================================================================
# OFFERS
# ==============================================================================

@loyalty_bp.route('/offers', methods=['GET'])
@require_tenant
def list_offers():
    """
    List offers for the tenant.

    Query params:
        active_only: Only active offers (default false)
    """
    active_only = request.args.get('active_only', 'false').lower() == 'true'
    offers = OfferAdminService(g.tenant_id).list_offers(active_only=active_only)
    return jsonify({
        'offers': [o.to_dict() for o in offers],
        'count': len(offers),
    })

@loyalty_bp.route('/offers', methods=['POST'])
@require_tenant
def create_offer():
    """
    Create an offer.

    JSON body:
        brand_name, size_group, required_quantity (required)
        offer_name, description, window_months (default 12)
        variations: optional list of qualifying variations
    """
    data = request.get_json(silent=True)
    if not data:
        return bad_request('Request body is required')

    offer = OfferAdminService(g.tenant_id).create_offer(data, user_id=g.user_id)
    return jsonify(offer.to_dict(include_variations=True)), 201

@loyalty_bp.route('/offers/<int:offer_id>', methods=['GET'])
@require_tenant
def get_offer(offer_id):
    offer = OfferAdminService(g.tenant_id).get_offer(offer_id)
    return jsonify(offer.to_dict(include_variations=True))

@loyalty_bp.route('/offers/<int:offer_id>', methods=['PATCH', 'PUT'])
@require_tenant
def update_offer(offer_id):
    data = request.get_json(silent=True)
    if not data:
        return bad_request('Request body is required')

    offer = OfferAdminService(g.tenant_id).update_offer(offer_id, data, user_id=g.user_id)
    return jsonify(offer.to_dict(include_variations=True))

@loyalty_bp.route('/offers/<int:offer_id>/deactivate', methods=['POST'])
@require_tenant
def deactivate_offer(offer_id):
    offer = OfferAdminService(g.tenant_id).deactivate_offer(offer_id, user_id=g.user_id)
    return jsonify(offer.to_dict())

@loyalty_bp.route('/offers/<int:offer_id>', methods=['DELETE'])
@require_tenant
def delete_offer(offer_id):
    """
    Delete an offer.

    Offers with purchase or reward history are soft-deleted; offers with
    in-progress or earned rewards cannot be deleted.
    """
    result = OfferAdminService(g.tenant_id).delete_offer(offer_id, user_id=g.user_id)
    return jsonify({'success': True, **result})

@loyalty_bp.route('/offers/<int:offer_id>/variations', methods=['POST'])
@require_tenant
def add_variations(offer_id):
    """
    Add qualifying variations to an offer.

    JSON body:
        variations: list of {variation_id, item_id, item_name, variation_name, sku, price_cents}
    """
    data = request.get_json(silent=True) or {}
    variations = data.get('variations')
    if not isinstance(variations, list) or not variations:
        return bad_request('variations must be a non-empty list')

    added = OfferAdminService(g.tenant_id).add_variations(offer_id, variations, user_id=g.user_id)
    return jsonify({
        'variations': [v.to_dict() for v in added],
        'count': len(added),
    }), 201

@loyalty_bp.route('/offers/<int:offer_id>/variations/<variation_id>', methods=['DELETE'])
@require_tenant
def remove_variation(offer_id, variation_id):
    OfferAdminService(g.tenant_id).remove_variation(offer_id, variation_id, user_id=g.user_id)
    return jsonify({'success': True})

# ==============================================================================
# REWARDS
# ==============================================================================

@loyalty_bp.route('/rewards', methods=['GET'])
@require_tenant
def list_rewards():
    """
    List rewards.

    Query params:
        status: in_progress | earned | redeemed | revoked
        customer_id, offer_id
        limit (default 50), offset (default 0)
    """
    query = Reward.query.filter_by(tenant_id=g.tenant_id)

    status = request.args.get('status')
    if status:
        try:
            query = query.filter(Reward.status == RewardStatus(status).value)
        except ValueError:
            return bad_request(f'Unknown reward status: {status}')

    customer_id = request.args.get('customer_id')
    if customer_id:
        query = query.filter(Reward.customer_id == customer_id)

    offer_id = request.args.get('offer_id', type=int)
    if offer_id:
        query = query.filter(Reward.offer_id == offer_id)

    limit = min(_int_arg('limit', 50), 500)
    offset = _int_arg('offset', 0)
    total = query.count()
    rewards = query.order_by(Reward.created_at.desc(), Reward.id.desc()).offset(offset).limit(limit).all()

    return jsonify({
        'rewards': [r.to_dict() for r in rewards],
        'total': total,
        'limit': limit,
        'offset': offset,
    })

@loyalty_bp.route('/rewards/<int:reward_id>', methods=['GET'])
@require_tenant
def get_reward(reward_id):
    reward = Reward.query.filter_by(id=reward_id, tenant_id=g.tenant_id).first()
    if not reward:
        raise RewardNotFoundError(reward_id)
    data = reward.to_dict()
    data['redemption'] = reward.redemption.to_dict() if reward.redemption else None
    return jsonify(data)

@loyalty_bp.route('/rewards/<int:reward_id>/redeem', methods=['POST'])
@require_tenant
def redeem_reward(reward_id):
    """
    Redeem an earned reward manually.

    JSON body:
        customer_id: must match the reward's customer when given
        order_id, location_id, variation_id, item_name
        value_cents: defaults to the reward's expected value
        notes
    """
    data = request.get_json(silent=True) or {}
    value_cents = data.get('value_cents')
    if value_cents is not None and (not isinstance(value_cents, int) or value_cents < 0):
        return bad_request('value_cents must be a non-negative integer')

    context = RedemptionContext(
        redemption_type=data.get('redemption_type', 'manual_admin'),
        customer_id=data.get('customer_id'),
        order_id=data.get('order_id'),
        location_id=data.get('location_id'),
        variation_id=data.get('variation_id'),
        item_name=data.get('item_name'),
        value_cents=value_cents,
        redeemed_by=g.user_id,
        notes=data.get('notes'),
        triggered_by='ADMIN',
    )
    result = RedemptionProcessor(g.tenant_id).redeem(reward_id, context)
    return jsonify({'success': True, **result})

# ==============================================================================
# CUSTOMERS
# ==============================================================================

@loyalty_bp.route('/customers/<customer_id>', methods=['GET'])
@require_tenant
def get_customer_status(customer_id):
    """Progress and earned rewards for a customer, per offer."""
    offer_id = request.args.get('offer_id', type=int)
    return jsonify(CustomerSummaryProjector(g.tenant_id).get_customer_status(customer_id, offer_id))

@loyalty_bp.route('/customers/<customer_id>/history', methods=['GET'])
@require_tenant
def get_customer_history(customer_id):
    offer_id = request.args.get('offer_id', type=int)
    limit = min(_int_arg('limit', 50), 500)
    return jsonify(CustomerSummaryProjector(g.tenant_id).get_customer_history(
        customer_id, offer_id=offer_id, limit=limit
    ))

# ==============================================================================
# ORDER INGESTION
# ==============================================================================

@loyalty_bp.route('/orders', methods=['POST'])
@require_tenant
def ingest_order():
    """
    Process a completed order given in the POS-neutral shape.

    Unlike webhooks, processing errors are returned to the caller.
    """
    data = request.get_json(silent=True)
    if not data or not data.get('orderId'):
        return bad_request('orderId is required')

    order = OrderEvent.from_dict(data)
    intake = OrderIntakeService(g.tenant_id)
    if order.refund_lines and not order.line_items:
        result = intake.process_refund(order, absorb_errors=False)
    else:
        result = intake.process_order(order, origin='api', absorb_errors=False)
    return jsonify(result)

# ==============================================================================
# SETTINGS & AUDIT
# ==============================================================================

@loyalty_bp.route('/settings', methods=['GET'])
@require_tenant
def get_settings():
    return jsonify({'settings': SettingsService(g.tenant_id).all()})

@loyalty_bp.route('/settings', methods=['PATCH'])
@require_tenant
def update_settings():
    """
    Update loyalty settings.

    JSON body: mapping of setting key to new value.
    """
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return bad_request('Request body must be an object of settings')

    service = SettingsService(g.tenant_id)
    for key, value in data.items():
        service.update(key, value, user_id=g.user_id)
    return jsonify({'settings': service.all()})

@loyalty_bp.route('/audit', methods=['GET'])
@require_tenant
def list_audit_entries():
    """
    Query the audit trail.

    Query params:
        action, customer_id, offer_id, reward_id, limit, offset
    """
    action = request.args.get('action')
    try:
        result = AuditLogger(g.tenant_id).query(
            action=action,
            customer_id=request.args.get('customer_id'),
            offer_id=request.args.get('offer_id', type=int),
            reward_id=request.args.get('reward_id', type=int),
            limit=_int_arg('limit', 50),
            offset=_int_arg('offset', 0),
        )
    except ValueError:
        return bad_request(f'Unknown audit action: {action}')
    return jsonify(result)

# ==============================================================================
# MAINTENANCE
# ==============================================================================

@loyalty_bp.route('/maintenance/expire-windows', methods=['POST'])
@require_tenant
def run_window_expiry():
    result = ExpirationService(g.tenant_id).process_expired_windows()
    return jsonify({'success': True, **result})

@loyalty_bp.route('/maintenance/expire-rewards', methods=['POST'])
@require_tenant
def run_earned_expiry():
    result = ExpirationService(g.tenant_id).process_expired_earned_rewards()
    return jsonify({'success': True, **result})

@loyalty_bp.route('/maintenance/reconcile-pos', methods=['POST'])
@require_tenant
def run_pos_reconcile():
    stats = POSRewardSync(g.tenant_id, pos_clients.for_tenant(g.tenant_id)).reconcile()
    return jsonify({'success': True, **stats})

@loyalty_bp.route('/maintenance/catchup', methods=['POST'])
@require_tenant
def run_catchup():
    """
    Replay recent completed orders from the POS.

    JSON body (optional):
        hours_back, max_orders
    """
    data = request.get_json(silent=True) or {}
    client = pos_clients.for_tenant(g.tenant_id)
    stats = CatchupReconciler(g.tenant_id, client).run(
        hours_back=data.get('hours_back'),
        max_orders=data.get('max_orders'),
    )
    return jsonify({'success': True, **stats})

@loyalty_bp.route('/maintenance/rebuild-summaries', methods=['POST'])
@require_tenant
def run_summary_rebuild():
    count = CustomerSummaryProjector(g.tenant_id).rebuild()
    current_app.logger.info(f"Rebuilt {count} customer summaries for tenant {g.tenant_id}")
    return jsonify({'success': True, 'summaries': count})

@loyalty_bp.route('/maintenance/failed-events', methods=['GET'])
@require_tenant
def list_failed_events():
    events = (
        FailedLoyaltyEvent.query
        .filter_by(tenant_id=g.tenant_id, resolved_at=None)
        .order_by(FailedLoyaltyEvent.created_at.desc())
        .limit(min(_int_arg('limit', 50), 500))
        .all()
    )
    return jsonify({'events': [e.to_dict() for e in events], 'count': len(events)})

@loyalty_bp.route('/maintenance/retry-failed', methods=['POST'])
@require_tenant
def run_failed_retry():
    stats = retry_failed_events(g.tenant_id)
    return jsonify({'success': True, **stats})
