# app/cli/reconcile.py
import asyncio

import click

from app.core.config import get_settings
from app.core.enums import Marketplace, TruthMode
from app.database import async_session
from app.integrations.setup import build_registry
from app.services.reconciliation_service import ReconciliationService


@click.command()
@click.option('--store', 'store_key', required=True, help='Store to reconcile')
@click.option('--marketplace', type=click.Choice([m.value for m in Marketplace]), required=True)
@click.option('--item-id', 'item_ids', type=int, multiple=True, help='Only these items (repeatable)')
@click.option('--dry-run', is_flag=True, help='Classify without writing anything')
@click.option('--batch-size', type=int, default=None)
@click.option('--truth', 'truth_mode', type=click.Choice([t.value for t in TruthMode]), default=None,
              help='Which side wins a disagreement (default: RECONCILE_TRUTH_MODE)')
@click.option('--drift-only', is_flag=True, help='Only flagged or never reconciled listings')
def reconcile(store_key, marketplace, item_ids, dry_run, batch_size, truth_mode, drift_only):
    """Compare local records with the marketplace and repair drift"""
    settings = get_settings()

    async def _reconcile():
        async with async_session() as session:
            service = ReconciliationService(session, build_registry(settings), settings=settings)
            return await service.reconcile(
                store_key, marketplace,
                item_ids=list(item_ids) or None,
                dry_run=dry_run,
                batch_size=batch_size,
                truth_mode=truth_mode,
                drift_only=drift_only,
            )

    report = asyncio.run(_reconcile())
    report.print_summary()


if __name__ == "__main__":
    reconcile()
