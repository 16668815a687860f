"""
Frequent buyer offer configuration.

An Offer is a "buy N, get 1 free" program for one brand + size group.
Only variations on its explicit allow-list count toward progress.
"""
from ..extensions import db
from ..utils.dates import utcnow


class Offer(db.Model):
    """
    Frequent buyer offer.

    One offer per (tenant, brand, size group). Offers are deactivated rather
    than deleted while rewards reference them.
    """
    __tablename__ = 'loyalty_offers'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)

    offer_name = db.Column(db.String(255), nullable=False)
    brand_name = db.Column(db.String(255), nullable=False)
    size_group = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text)

    required_quantity = db.Column(db.Integer, nullable=False)
    reward_quantity = db.Column(db.Integer, nullable=False, default=1)  # Always 1
    window_months = db.Column(db.Integer, nullable=False, default=12)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_by = db.Column(db.String(100))
    deleted_at = db.Column(db.DateTime)  # Configuration removed, history kept
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    variations = db.relationship('QualifyingVariation', backref='offer', lazy='dynamic')

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'brand_name', 'size_group', name='uq_offer_tenant_brand_size'),
    )

    def __repr__(self):
        return f'<Offer {self.id} {self.brand_name}/{self.size_group}>'

    def to_dict(self, include_variations=False):
        data = {
            'id': self.id,
            'offer_name': self.offer_name,
            'brand_name': self.brand_name,
            'size_group': self.size_group,
            'description': self.description,
            'required_quantity': self.required_quantity,
            'reward_quantity': self.reward_quantity,
            'window_months': self.window_months,
            'is_active': self.is_active,
            'deleted': self.deleted_at is not None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if include_variations:
            data['variations'] = [
                v.to_dict() for v in self.variations.filter_by(is_active=True).all()
            ]
        return data


class QualifyingVariation(db.Model):
    """
    Allow-list entry mapping a catalog item variation to an offer.
    """
    __tablename__ = 'loyalty_qualifying_variations'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey('tenants.id'), nullable=False, index=True)
    offer_id = db.Column(db.Integer, db.ForeignKey('loyalty_offers.id'), nullable=False, index=True)

    variation_id = db.Column(db.String(100), nullable=False)
    item_id = db.Column(db.String(100))
    item_name = db.Column(db.String(255))
    variation_name = db.Column(db.String(255))
    sku = db.Column(db.String(100))
    price_cents = db.Column(db.Integer)  # Catalog price, used for discount cap fallback

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'offer_id', 'variation_id', name='uq_variation_tenant_offer'),
        db.Index('ix_variation_tenant_variation', 'tenant_id', 'variation_id'),
    )

    def __repr__(self):
        return f'<QualifyingVariation {self.variation_id} -> {self.offer_id}>'

    def to_dict(self):
        return {
            'id': self.id,
            'offer_id': self.offer_id,
            'variation_id': self.variation_id,
            'item_id': self.item_id,
            'item_name': self.item_name,
            'variation_name': self.variation_name,
            'sku': self.sku,
            'price_cents': self.price_cents,
            'is_active': self.is_active,
        }
