"""
Webhook handlers for POS events.
"""
from .order_lifecycle import order_lifecycle_bp

__all__ = ['order_lifecycle_bp']
