"""
Background queue for POS reward synchronization.

Activation and deactivation of POS discounts run after the ledger
transaction commits, on a bounded thread pool. Each task gets its own
application context and session. With POS_SYNC_EAGER set, tasks run
inline instead (used in tests).
"""
import logging
from concurrent.futures import ThreadPoolExecutor, Future
from typing import Optional, Iterable

from ..extensions import db, pos_clients

logger = logging.getLogger(__name__)


def _activate(tenant_id: int, reward_id: int, pos_client=None):
    from .pos_reward_sync import POSRewardSync
    client = pos_client or pos_clients.for_tenant(tenant_id)
    return POSRewardSync(tenant_id, client).activate(reward_id)


def _deactivate(tenant_id: int, reward_id: int, pos_client=None):
    from .pos_reward_sync import POSRewardSync
    client = pos_client or pos_clients.for_tenant(tenant_id)
    return POSRewardSync(tenant_id, client).deactivate(reward_id)


class PosSyncQueue:
    """
    Fire-and-forget dispatch of POS sync tasks.
    """

    def __init__(self, app=None):
        self.app = None
        self.eager = False
        self._executor: Optional[ThreadPoolExecutor] = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        self.eager = app.config.get('POS_SYNC_EAGER', False)
        if not self.eager:
            self._executor = ThreadPoolExecutor(
                max_workers=app.config.get('POS_SYNC_MAX_WORKERS', 4),
                thread_name_prefix='pos-sync'
            )
        app.extensions['pos_sync_queue'] = self

    def _run(self, fn, *args):
        """Run a task in its own app context, logging instead of raising."""
        with self.app.app_context():
            try:
                return fn(*args)
            except Exception as e:
                logger.error(f"POS sync task {fn.__name__}{args[:2]} failed - manual sync required: {e}")
                db.session.rollback()
                return None
            finally:
                db.session.remove()

    def submit(self, fn, *args) -> Optional[Future]:
        if self.app is None:
            logger.warning(f"POS sync queue not initialised, dropping {fn.__name__}{args[:2]}")
            return None

        if self.eager:
            try:
                fn(*args)
            except Exception as e:
                logger.error(f"POS sync task {fn.__name__}{args[:2]} failed - manual sync required: {e}")
                db.session.rollback()
            return None

        return self._executor.submit(self._run, fn, *args)

    def activate(self, tenant_id: int, reward_id: int, pos_client=None):
        return self.submit(_activate, tenant_id, reward_id, pos_client)

    def deactivate(self, tenant_id: int, reward_id: int, pos_client=None):
        return self.submit(_deactivate, tenant_id, reward_id, pos_client)

    def dispatch(
        self,
        tenant_id: int,
        activate_ids: Iterable[int] = (),
        deactivate_ids: Iterable[int] = (),
        pos_client=None,
    ):
        """Queue activations and deactivations collected during a transaction."""
        for reward_id in deactivate_ids:
            self.deactivate(tenant_id, reward_id, pos_client)
        for reward_id in activate_ids:
            self.activate(tenant_id, reward_id, pos_client)

    def shutdown(self, wait: bool = True):
        if self._executor:
            self._executor.shutdown(wait=wait)


# POS sync queue
sync_queue = PosSyncQueue()
