"""
Tests for the Square order and refund webhooks.

The POS client is mocked; handlers must always acknowledge with 200.
"""
from datetime import timedelta

from frequent_buyer.models import PurchaseEvent, FailedLoyaltyEvent, Reward, RewardStatus
from frequent_buyer.utils.dates import utcnow
from frequent_buyer.utils.exceptions import POSError

CLOSED_AT = (utcnow() - timedelta(hours=2)).strftime('%Y-%m-%dT%H:%M:%SZ')


def full_order(order_id='WEB-1', quantity='1', state='COMPLETED'):
    return {
        'id': order_id,
        'location_id': 'LOC-1',
        'customer_id': 'cust-1',
        'state': state,
        'closed_at': CLOSED_AT,
        'line_items': [{
            'uid': f'{order_id}-li',
            'catalog_object_id': 'VAR-1',
            'quantity': quantity,
            'base_price_money': {'amount': 4500},
            'total_money': {'amount': 4500 * int(quantity)},
        }],
    }


def return_order(source_order_id='WEB-1', quantity='1'):
    return {
        'id': 'RETURN-1',
        'location_id': 'LOC-1',
        'customer_id': 'cust-1',
        'state': 'COMPLETED',
        'closed_at': CLOSED_AT,
        'returns': [{
            'source_order_id': source_order_id,
            'return_line_items': [{
                'uid': 'RLI-1',
                'catalog_object_id': 'VAR-1',
                'quantity': quantity,
                'base_price_money': {'amount': 4500},
            }],
        }],
    }


def order_webhook(obj, merchant_id='MERCHANT-1'):
    return {'merchant_id': merchant_id, 'type': 'order.updated', 'data': {'object': obj}}


def refund_webhook(refund, merchant_id='MERCHANT-1'):
    return {'merchant_id': merchant_id, 'type': 'refund.updated', 'data': {'object': {'refund': refund}}}


class TestOrderWebhook:
    """Tests for POST /webhooks/square/orders."""

    def test_full_order_processed(self, client, sample_offer):
        response = client.post('/webhooks/square/orders', json=order_webhook({'order': full_order(quantity='2')}))

        assert response.status_code == 200
        data = response.get_json()
        assert data['success'] is True
        assert data['result']['processed'] is True
        assert PurchaseEvent.query.one().quantity == 2

    def test_stub_fetches_completed_order(self, client, sample_offer, fake_pos):
        fake_pos.retrieve_order.return_value = full_order(quantity='3')

        response = client.post('/webhooks/square/orders', json=order_webhook({
            'order_updated': {'order_id': 'WEB-1', 'state': 'COMPLETED'},
        }))

        assert response.get_json()['result']['processed'] is True
        fake_pos.retrieve_order.assert_called_once_with('WEB-1')
        assert Reward.query.filter_by(status=RewardStatus.EARNED.value).count() == 1

    def test_open_order_ignored(self, client, sample_offer, fake_pos):
        response = client.post('/webhooks/square/orders', json=order_webhook({
            'order_updated': {'order_id': 'WEB-1', 'state': 'OPEN'},
        }))

        assert response.get_json()['ignored'] == 'order not completed'
        fake_pos.retrieve_order.assert_not_called()

    def test_fetch_failure_deferred(self, client, sample_offer, fake_pos):
        fake_pos.retrieve_order.side_effect = POSError('Order lookup failed')

        response = client.post('/webhooks/square/orders', json=order_webhook({
            'order_updated': {'order_id': 'WEB-1', 'state': 'COMPLETED'},
        }))

        assert response.status_code == 200
        assert response.get_json()['deferred'] == 'order fetch failed'

    def test_unknown_merchant_acknowledged(self, client, sample_offer):
        response = client.post(
            '/webhooks/square/orders',
            json=order_webhook({'order': full_order()}, merchant_id='SOMEONE-ELSE'),
        )

        assert response.status_code == 200
        assert response.get_json()['ignored'] == 'unknown merchant'
        assert PurchaseEvent.query.count() == 0

    def test_redelivery_is_harmless(self, client, sample_offer):
        payload = order_webhook({'order': full_order(quantity='2')})
        client.post('/webhooks/square/orders', json=payload)
        response = client.post('/webhooks/square/orders', json=payload)

        assert response.get_json()['result']['processed'] is False
        assert PurchaseEvent.query.count() == 1

    def test_processing_failure_still_acknowledged(self, client, sample_offer, fake_pos):
        fake_pos.get_customer_id_for_order.side_effect = RuntimeError('unexpected')
        order = full_order()
        del order['customer_id']

        response = client.post('/webhooks/square/orders', json=order_webhook({'order': order}))

        assert response.status_code == 200
        assert response.get_json()['result']['reason'] == 'error'
        assert FailedLoyaltyEvent.query.one().order_id == 'WEB-1'


class TestRefundWebhook:
    """Tests for POST /webhooks/square/refunds."""

    def test_refund_revokes_earned_reward(self, client, sample_offer, fake_pos):
        client.post('/webhooks/square/orders', json=order_webhook({'order': full_order(quantity='3')}))
        fake_pos.retrieve_order.return_value = return_order()

        response = client.post('/webhooks/square/refunds', json=refund_webhook({
            'id': 'REFUND-1', 'status': 'COMPLETED', 'order_id': 'RETURN-1',
        }))

        result = response.get_json()['result']
        assert result['processed'] is True
        assert Reward.query.filter_by(status=RewardStatus.REVOKED.value).count() == 1
        fake_pos.retrieve_order.assert_called_once_with('RETURN-1')

    def test_pending_refund_ignored(self, client, sample_offer, fake_pos):
        response = client.post('/webhooks/square/refunds', json=refund_webhook({
            'id': 'REFUND-1', 'status': 'PENDING', 'order_id': 'RETURN-1',
        }))

        assert response.get_json()['ignored'] == 'refund not completed'
        fake_pos.retrieve_order.assert_not_called()

    def test_refund_without_returned_items(self, client, sample_offer, fake_pos):
        fake_pos.retrieve_order.return_value = full_order()

        response = client.post('/webhooks/square/refunds', json=refund_webhook({
            'id': 'REFUND-1', 'status': 'COMPLETED', 'order_id': 'WEB-1',
        }))

        assert response.get_json()['ignored'] == 'no returned items'
