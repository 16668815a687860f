"""
Per-tenant loyalty settings.

Stored under Tenant.settings['loyalty'] and merged over
DEFAULT_LOYALTY_SETTINGS. Policy values left unset fall back to app config.
"""
from typing import Any, Dict

from flask import current_app, has_app_context
from sqlalchemy.orm.attributes import flag_modified

from ..extensions import db
from ..models.tenant import Tenant
from ..models.audit_log import AuditAction
from ..utils.exceptions import TenantIsolationError, NotFoundError, ValidationError
from ..utils.settings_defaults import DEFAULT_LOYALTY_SETTINGS, SETTING_TYPES
from .audit_logger import AuditLogger, SettingUpdated

CONFIG_FALLBACKS = {
    'default_max_discount_cents': 'DEFAULT_MAX_DISCOUNT_CENTS',
    'catchup_hours_back': 'CATCHUP_HOURS_BACK',
}


def _coerce(key: str, value: Any) -> Any:
    expected = SETTING_TYPES[key]
    if value is None:
        if expected is bool:
            raise ValidationError(f"{key} must be true or false", field=key)
        return None
    if expected is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.lower() in ('true', 'false', '1', '0'):
            return value.lower() in ('true', '1')
        raise ValidationError(f"{key} must be true or false", field=key)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer", field=key)
    if number < 0 or isinstance(value, bool):
        raise ValidationError(f"{key} must be a non-negative integer", field=key)
    return number


class SettingsService:
    """Read and update loyalty settings for one tenant."""

    def __init__(self, tenant_id: int):
        if not tenant_id:
            raise TenantIsolationError('SettingsService')
        self.tenant_id = tenant_id

    def _tenant(self) -> Tenant:
        tenant = Tenant.query.get(self.tenant_id)
        if not tenant:
            raise NotFoundError('Tenant', self.tenant_id)
        return tenant

    def _stored(self) -> Dict[str, Any]:
        return dict((self._tenant().settings or {}).get('loyalty') or {})

    def all(self) -> Dict[str, Any]:
        """All settings with defaults and config fallbacks applied."""
        stored = self._stored()
        return {key: self._resolve(key, stored) for key in DEFAULT_LOYALTY_SETTINGS}

    def get(self, key: str) -> Any:
        if key not in DEFAULT_LOYALTY_SETTINGS:
            raise ValidationError(f"Unknown loyalty setting '{key}'", field='key')
        return self._resolve(key, self._stored())

    def _resolve(self, key: str, stored: Dict[str, Any]) -> Any:
        value = stored.get(key, DEFAULT_LOYALTY_SETTINGS[key])
        if value is None and key in CONFIG_FALLBACKS and has_app_context():
            value = current_app.config.get(CONFIG_FALLBACKS[key])
        return value

    def update(self, key: str, value: Any, user_id: str = None) -> Any:
        """Validate, store and audit a single setting. Commits."""
        if key not in DEFAULT_LOYALTY_SETTINGS:
            raise ValidationError(f"Unknown loyalty setting '{key}'", field='key')
        value = _coerce(key, value)

        tenant = self._tenant()
        settings = dict(tenant.settings or {})
        loyalty = dict(settings.get('loyalty') or {})
        old_value = loyalty.get(key, DEFAULT_LOYALTY_SETTINGS[key])
        loyalty[key] = value
        settings['loyalty'] = loyalty
        tenant.settings = settings
        flag_modified(tenant, 'settings')

        AuditLogger(self.tenant_id).log(
            AuditAction.SETTING_UPDATED,
            SettingUpdated(key=key, old_value=old_value, new_value=value),
            triggered_by='ADMIN',
            user_id=user_id,
        )
        db.session.commit()
        return self.get(key)

    def is_enabled(self) -> bool:
        return bool(self.get('loyalty_enabled'))
