"""
CLI commands for loyalty maintenance.

These commands can be run manually or via cron jobs when the in-process
scheduler is disabled:

# Window expiry (daily)
0 3 * * * cd /app && flask loyalty expire-windows

# Catch-up of missed orders (hourly)
15 * * * * cd /app && flask loyalty catchup --hours-back=6
"""

import click
from flask.cli import with_appcontext

from ..extensions import pos_clients
from ..models.tenant import Tenant
from ..services.expiration_service import ExpirationService
from ..services.catchup_reconciler import CatchupReconciler
from ..services.pos_reward_sync import POSRewardSync
from ..services.customer_summary import CustomerSummaryProjector
from ..services.failed_event_retry import retry_failed_events


@click.group('loyalty')
def loyalty_cli():
    """Frequent buyer maintenance commands."""
    pass


def _tenants(tenant_id):
    if tenant_id:
        tenant = Tenant.query.get(tenant_id)
        if not tenant:
            click.echo(f"Tenant {tenant_id} not found")
            return []
        return [tenant]
    return Tenant.query.filter_by(is_active=True).all()


@loyalty_cli.command('expire-windows')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def expire_windows(tenant_id):
    """
    Drop expired purchases from reward progress.

    Run this daily.
    """
    total = 0
    for tenant in _tenants(tenant_id):
        result = ExpirationService(tenant.id).process_expired_windows()
        click.echo(f"Tenant {tenant.shop_slug}: {result['processed_count']} customer offers updated")
        total += result['processed_count']
    click.echo(f"\nTOTAL: {total} customer offers updated")


@loyalty_cli.command('expire-rewards')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def expire_rewards(tenant_id):
    """Revoke earned rewards whose locked purchases have all expired."""
    total = 0
    for tenant in _tenants(tenant_id):
        result = ExpirationService(tenant.id).process_expired_earned_rewards()
        click.echo(f"Tenant {tenant.shop_slug}: {result['revoked_count']} rewards revoked")
        for reward_id in result['reward_ids'][:10]:
            click.echo(f"    - Reward {reward_id}")
        total += result['revoked_count']
    click.echo(f"\nTOTAL: {total} rewards revoked")


@loyalty_cli.command('catchup')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@click.option('--hours-back', type=int, default=None, help='Hours of orders to scan')
@click.option('--max-orders', type=int, default=None, help='Maximum orders to fetch')
@with_appcontext
def catchup(tenant_id, hours_back, max_orders):
    """Replay recent completed orders missed by webhooks."""
    for tenant in _tenants(tenant_id):
        client = pos_clients.for_tenant(tenant.id)
        stats = CatchupReconciler(tenant.id, client).run(hours_back=hours_back, max_orders=max_orders)
        if stats.get('skipped'):
            click.echo(f"Tenant {tenant.shop_slug}: skipped ({stats['reason']})")
            continue
        click.echo(f"Tenant {tenant.shop_slug}:")
        click.echo(f"  Orders found: {stats['orders_found']}")
        click.echo(f"  Already known: {stats['already_known']}")
        click.echo(f"  Processed: {stats['processed']}")
        click.echo(f"  Redemptions detected: {stats['redemptions_detected']}")
        if stats['failed'] or stats.get('error'):
            click.echo(f"  Failed: {stats['failed']} {stats.get('error', '')}")


@loyalty_cli.command('reconcile-pos')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def reconcile_pos(tenant_id):
    """Repair POS discounts that disagree with reward state."""
    for tenant in _tenants(tenant_id):
        stats = POSRewardSync(tenant.id, pos_clients.for_tenant(tenant.id)).reconcile()
        click.echo(
            f"Tenant {tenant.shop_slug}: {stats['activated']} activated, "
            f"{stats['deactivated']} deactivated, {stats['failed']} failed"
        )


@loyalty_cli.command('retry-failed')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@click.option('--limit', type=int, default=50, help='Maximum events per tenant')
@with_appcontext
def retry_failed(tenant_id, limit):
    """Retry loyalty events that failed processing."""
    for tenant in _tenants(tenant_id):
        stats = retry_failed_events(tenant.id, limit=limit)
        click.echo(
            f"Tenant {tenant.shop_slug}: {stats['resolved']} resolved, "
            f"{stats['failed']} failed, {stats['exhausted']} exhausted"
        )


@loyalty_cli.command('rebuild-summaries')
@click.option('--tenant-id', type=int, help='Specific tenant ID (or all if not specified)')
@with_appcontext
def rebuild_summaries(tenant_id):
    """Recompute customer summaries from the purchase ledger."""
    for tenant in _tenants(tenant_id):
        count = CustomerSummaryProjector(tenant.id).rebuild()
        click.echo(f"Tenant {tenant.shop_slug}: {count} summaries rebuilt")


def init_app(app):
    """Register CLI commands with the Flask app."""
    app.cli.add_command(loyalty_cli)
