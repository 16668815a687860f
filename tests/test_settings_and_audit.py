"""
Tests for tenant loyalty settings and the audit trail.
"""
import pytest

from frequent_buyer.extensions import db
from frequent_buyer.models import Tenant, AuditLogEntry, AuditAction
from frequent_buyer.services.settings_service import SettingsService
from frequent_buyer.services.audit_logger import AuditLogger, OfferChange, WindowExpired
from frequent_buyer.utils.exceptions import ValidationError, TenantIsolationError


class TestSettingsService:
    """Tests for SettingsService."""

    def test_defaults(self, app, sample_tenant):
        settings = SettingsService(sample_tenant.id).all()

        assert settings['loyalty_enabled'] is True
        assert settings['auto_detect_redemptions'] is True
        assert settings['default_max_discount_cents'] == app.config['DEFAULT_MAX_DISCOUNT_CENTS']
        assert settings['catchup_hours_back'] == app.config['CATCHUP_HOURS_BACK']

    def test_update_is_stored_and_audited(self, app, sample_tenant):
        service = SettingsService(sample_tenant.id)

        assert service.update('auto_detect_redemptions', 'false', user_id='staff-1') is False

        tenant = Tenant.query.get(sample_tenant.id)
        assert tenant.settings['loyalty']['auto_detect_redemptions'] is False
        entry = AuditLogEntry.query.filter_by(action=AuditAction.SETTING_UPDATED.value).one()
        assert entry.details == {'key': 'auto_detect_redemptions', 'old_value': True, 'new_value': False}
        assert entry.user_id == 'staff-1'

    def test_integer_setting_coerced(self, app, sample_tenant):
        assert SettingsService(sample_tenant.id).update('catchup_hours_back', '12') == 12

    @pytest.mark.parametrize('key,value', [
        ('loyalty_enabled', 'sometimes'),
        ('loyalty_enabled', None),
        ('catchup_hours_back', -1),
        ('catchup_hours_back', 'soon'),
        ('points_multiplier', 2),
    ])
    def test_invalid_updates_rejected(self, app, sample_tenant, key, value):
        with pytest.raises(ValidationError):
            SettingsService(sample_tenant.id).update(key, value)
        assert AuditLogEntry.query.count() == 0

    def test_tenant_required(self, app):
        with pytest.raises(TenantIsolationError):
            SettingsService(None)


class TestAuditLogger:
    """Tests for AuditLogger."""

    def test_payload_must_match_action(self, app, sample_tenant):
        audit = AuditLogger(sample_tenant.id)
        with pytest.raises(ValidationError):
            audit.log(AuditAction.OFFER_CREATED, WindowExpired(expired_quantity=2))

    def test_query_filters_and_orders(self, app, sample_offer, buy):
        buy(1, customer_id='cust-1')
        buy(1, customer_id='cust-2')

        audit = AuditLogger(sample_offer.tenant_id)
        result = audit.query(action='PURCHASE_RECORDED')
        assert result['total'] == 2
        assert [e['customer_id'] for e in result['entries']] == ['cust-2', 'cust-1']

        result = audit.query(customer_id='cust-1')
        assert {e['customer_id'] for e in result['entries']} == {'cust-1'}

    def test_unknown_action_rejected(self, app, sample_tenant):
        with pytest.raises(ValueError):
            AuditLogger(sample_tenant.id).query(action='POINTS_AWARDED')

    def test_entries_scoped_to_tenant(self, app, sample_tenant):
        other = Tenant(shop_name='Other', shop_slug='other', square_merchant_id='MERCHANT-2', is_active=True)
        db.session.add(other)
        db.session.flush()
        AuditLogger(other.id).log(AuditAction.OFFER_CREATED, OfferChange(offer_name='Theirs'))
        db.session.commit()

        assert AuditLogger(sample_tenant.id).query()['total'] == 0
        assert AuditLogger(other.id).query()['total'] == 1
