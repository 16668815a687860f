"""
Request middleware.
"""
from .tenant_auth import require_tenant, get_tenant_id_from_request

__all__ = ['require_tenant', 'get_tenant_id_from_request']
