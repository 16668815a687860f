"""
Tenant model for multi-tenant loyalty.
"""
from ..extensions import db
from ..utils.dates import utcnow


class Tenant(db.Model):
    """
    Merchant using the frequent buyer program.
    Global table - shared across all tenants.
    """
    __tablename__ = 'tenants'

    id = db.Column(db.Integer, primary_key=True)
    shop_name = db.Column(db.String(255), nullable=False)
    shop_slug = db.Column(db.String(100), unique=True, nullable=False)

    # Square integration
    square_merchant_id = db.Column(db.String(100), index=True)
    square_access_token = db.Column(db.Text)  # Encrypted in production

    # Settings (JSON for flexibility). Loyalty settings live under 'loyalty'.
    settings = db.Column(db.JSON, default=dict)

    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    locations = db.relationship('Location', backref='tenant', lazy='dynamic')

    def __repr__(self):
        return f'<Tenant {self.shop_slug}>'

    def to_dict(self):
        return {
            'id': self.id,
            'shop_name': self.shop_name,
            'shop_slug': self.shop_slug,
            'square_merchant_id': self.square_merchant_id,
            'is_active': self.is_active
        }


class Location(db.Model):
    """
    POS location belonging to a tenant. The catch-up reconciler scans
    completed orders across every active location.
    """
    __tablename__ = 'locations'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    square_location_id = db.Column(db.String(100), nullable=False)
    name = db.Column(db.String(255))
    active = db.Column(db.Boolean, default=True)

    created_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'square_location_id', name='uq_location_tenant_square_id'),
    )

    def __repr__(self):
        return f'<Location {self.square_location_id}>'
