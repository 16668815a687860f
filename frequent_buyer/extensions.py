"""
Flask extensions initialization.
"""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

# Database
db = SQLAlchemy()

# Migrations
migrate = Migrate()


class POSClientRegistry:
    """
    Resolves the POS client used for a tenant.

    The factory is bound once in create_app(). Services receive the
    resolved client through their constructors; nothing imports a
    module-level client.
    """

    def __init__(self):
        self._factory = None

    def init_app(self, app, factory=None):
        if factory is None:
            from .services.pos_client import SquareClient
            factory = SquareClient.for_tenant
        self._factory = factory
        app.extensions['pos_clients'] = self

    def set_factory(self, factory):
        self._factory = factory

    def for_tenant(self, tenant_id: int):
        if self._factory is None:
            from .utils.exceptions import ConfigurationError
            raise ConfigurationError('POS client registry used before init_app()')
        return self._factory(tenant_id)


# POS clients
pos_clients = POSClientRegistry()
