"""
Shared fixtures for the frequent buyer test suite.

Each test gets a fresh in-memory database, an app context for its whole
duration, and a mocked POS client registered for every tenant.
"""
import pytest
from itertools import count
from unittest.mock import MagicMock

from frequent_buyer import create_app
from frequent_buyer.extensions import db, pos_clients
from frequent_buyer.models import Tenant, Location, Offer, QualifyingVariation
from frequent_buyer.services.pos_client import POSClient


@pytest.fixture
def fake_pos():
    """POS client mock returning fresh Square-style ids."""
    ids = count(1)
    client = MagicMock(spec=POSClient)
    client.create_customer_group.side_effect = lambda name, key: f'GROUP-{next(ids)}'
    client.create_reward_discount.side_effect = lambda *args, **kwargs: {
        'discount_id': f'DISCOUNT-{next(ids)}',
        'product_set_id': f'PRODUCT-SET-{next(ids)}',
        'pricing_rule_id': f'PRICING-RULE-{next(ids)}',
    }
    client.get_customer_id_for_order.return_value = None
    client.retrieve_order.return_value = None
    client.search_completed_orders.return_value = []
    return client


@pytest.fixture
def app(fake_pos):
    """Application with fresh tables and an active app context."""
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        pos_clients.set_factory(lambda tenant_id: fake_pos)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sample_tenant(app):
    tenant = Tenant(
        shop_name='Paws & Claws',
        shop_slug='paws-and-claws',
        square_merchant_id='MERCHANT-1',
        square_access_token='test-token',
        settings={},
        is_active=True,
    )
    db.session.add(tenant)
    db.session.flush()
    db.session.add(Location(tenant_id=tenant.id, square_location_id='LOC-1', name='Main St', active=True))
    db.session.commit()
    return tenant


@pytest.fixture
def auth_headers(sample_tenant):
    return {
        'X-Tenant-ID': str(sample_tenant.id),
        'X-User-ID': 'staff-1',
        'Content-Type': 'application/json',
    }


@pytest.fixture
def sample_offer(sample_tenant):
    """Buy 3 bags of Acme Large, get one free; 12 month window."""
    offer = Offer(
        tenant_id=sample_tenant.id,
        offer_name='Acme Large Bags',
        brand_name='Acme',
        size_group='Large',
        required_quantity=3,
        reward_quantity=1,
        window_months=12,
        is_active=True,
    )
    db.session.add(offer)
    db.session.flush()
    for variation_id, price in (('VAR-1', 4500), ('VAR-2', 5200)):
        db.session.add(QualifyingVariation(
            tenant_id=sample_tenant.id,
            offer_id=offer.id,
            variation_id=variation_id,
            item_name='Acme Kibble',
            variation_name=variation_id,
            price_cents=price,
            is_active=True,
        ))
    db.session.commit()
    return offer


@pytest.fixture
def ledger(sample_tenant, fake_pos):
    from frequent_buyer.services.purchase_ledger import PurchaseLedger
    return PurchaseLedger(sample_tenant.id, pos_client=fake_pos)


@pytest.fixture
def buy(ledger):
    """Record a purchase of VAR-1 for cust-1 on a fresh order."""
    orders = count(1)

    def _buy(quantity=1, customer_id='cust-1', variation_id='VAR-1', order_id=None, **kwargs):
        return ledger.record_purchase(
            order_id=order_id or f'ORDER-{next(orders)}',
            variation_id=variation_id,
            quantity=quantity,
            customer_id=customer_id,
            unit_price_cents=kwargs.pop('unit_price_cents', 4500),
            **kwargs
        )

    return _buy
