"""
Tenant resolution for the admin API.

Authentication happens upstream; requests arrive with the tenant in the
X-Tenant-ID header and, optionally, the acting staff member in X-User-ID.
"""
from functools import wraps
from typing import Optional

from flask import request, g

from ..models import Tenant
from ..utils.errors import error_response, not_found, ErrorCode


def get_tenant_id_from_request() -> Optional[int]:
    value = request.headers.get('X-Tenant-ID', '').strip()
    if not value.isdigit():
        return None
    return int(value)


def require_tenant(f):
    """
    Decorator resolving the request's tenant into g.tenant / g.tenant_id.

    Requests without a tenant are rejected before reaching any service.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        tenant_id = get_tenant_id_from_request()
        if not tenant_id:
            return error_response(
                'X-Tenant-ID header is required', ErrorCode.TENANT_REQUIRED, 401, log_error=False
            )

        tenant = Tenant.query.filter_by(id=tenant_id, is_active=True).first()
        if not tenant:
            return not_found('Tenant not found')

        g.tenant = tenant
        g.tenant_id = tenant.id
        g.user_id = request.headers.get('X-User-ID')
        return f(*args, **kwargs)

    return decorated_function
