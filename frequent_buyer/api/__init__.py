"""
Admin API blueprints.
"""
from .loyalty import loyalty_bp

__all__ = ['loyalty_bp']
