"""
Background scheduler for loyalty maintenance.

Handles:
- Window expiry sweep (daily at 3 AM UTC)
- Expired earned reward revocation (daily at 3:30 AM UTC)
- Catch-up of missed orders (hourly)
- POS discount reconciliation (every 30 minutes)
- Failed event retry (every 10 minutes)
"""
import os
import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

_scheduler = None
_flask_app = None


def init_scheduler(app):
    """
    Initialize the background scheduler.

    Only runs when SCHEDULER_ENABLED is set. Only one process per
    deployment should run it.
    """
    global _scheduler, _flask_app

    _flask_app = app

    if app.config.get('TESTING') or not app.config.get('SCHEDULER_ENABLED'):
        logger.info('[Scheduler] Disabled (set SCHEDULER_ENABLED=true)')
        return

    # Prevent multiple scheduler instances across gunicorn workers
    if os.getenv('SCHEDULER_RUNNING') == 'true':
        logger.info('[Scheduler] Already running in another process')
        return

    _scheduler = BackgroundScheduler(
        timezone='UTC',
        job_defaults={
            'coalesce': True,
            'max_instances': 1,
            'misfire_grace_time': 3600
        }
    )

    _scheduler.add_job(
        run_window_expiry,
        trigger=CronTrigger(hour=3, minute=0),
        id='window_expiry',
        name='Drop expired purchases from reward progress',
        replace_existing=True
    )

    _scheduler.add_job(
        run_earned_reward_expiry,
        trigger=CronTrigger(hour=3, minute=30),
        id='earned_reward_expiry',
        name='Revoke earned rewards with fully expired purchases',
        replace_existing=True
    )

    _scheduler.add_job(
        run_catchup,
        trigger=CronTrigger(minute=15),
        id='order_catchup',
        name='Replay completed orders missed by webhooks',
        replace_existing=True
    )

    _scheduler.add_job(
        run_pos_reconcile,
        trigger=IntervalTrigger(minutes=30),
        id='pos_reconcile',
        name='Reconcile POS reward discounts',
        replace_existing=True
    )

    _scheduler.add_job(
        run_failed_event_retry,
        trigger=IntervalTrigger(minutes=10),
        id='failed_event_retry',
        name='Retry failed loyalty events',
        replace_existing=True
    )

    _scheduler.start()
    os.environ['SCHEDULER_RUNNING'] = 'true'
    logger.info(f'[Scheduler] Started with {len(_scheduler.get_jobs())} jobs')

    atexit.register(shutdown_scheduler)


def shutdown_scheduler():
    """Gracefully shutdown the scheduler."""
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info('[Scheduler] Shutdown complete')


def _for_each_tenant(job_name, fn):
    """
    Run fn(tenant_id) for every active tenant inside an app context.

    A failing tenant is logged and does not stop the others.
    """
    if not _flask_app:
        logger.error('[Scheduler] Flask app not initialized')
        return

    with _flask_app.app_context():
        from ..extensions import db
        from ..models.tenant import Tenant

        tenant_ids = [t.id for t in Tenant.query.filter_by(is_active=True).all()]
        for tenant_id in tenant_ids:
            try:
                result = fn(tenant_id)
                logger.info(f'[Scheduler] {job_name} tenant {tenant_id}: {result}')
            except Exception as e:
                db.session.rollback()
                logger.error(f'[Scheduler] {job_name} failed for tenant {tenant_id}: {e}')


def run_window_expiry():
    from ..services.expiration_service import ExpirationService
    _for_each_tenant(
        'Window expiry',
        lambda tenant_id: ExpirationService(tenant_id).process_expired_windows()
    )


def run_earned_reward_expiry():
    from ..services.expiration_service import ExpirationService
    _for_each_tenant(
        'Earned reward expiry',
        lambda tenant_id: ExpirationService(tenant_id).process_expired_earned_rewards()
    )


def run_catchup():
    from ..extensions import pos_clients
    from ..services.catchup_reconciler import CatchupReconciler
    _for_each_tenant(
        'Catch-up',
        lambda tenant_id: CatchupReconciler(tenant_id, pos_clients.for_tenant(tenant_id)).run()
    )


def run_pos_reconcile():
    from ..extensions import pos_clients
    from ..services.pos_reward_sync import POSRewardSync
    _for_each_tenant(
        'POS reconcile',
        lambda tenant_id: POSRewardSync(tenant_id, pos_clients.for_tenant(tenant_id)).reconcile()
    )


def run_failed_event_retry():
    from ..services.failed_event_retry import retry_failed_events
    _for_each_tenant('Failed event retry', retry_failed_events)
