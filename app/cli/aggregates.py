# app/cli/aggregates.py
import asyncio
import json

import click

from app.core.config import get_settings
from app.core.enums import Marketplace
from app.database import async_session
from app.services.aggregation_service import AggregationService

MARKETPLACES = [m.value for m in Marketplace]


@click.group()
def aggregates():
    """Per-SKU aggregate maintenance"""


@aggregates.command()
@click.option('--store', 'store_key', required=True)
@click.option('--marketplace', type=click.Choice(MARKETPLACES), required=True)
@click.option('--sku', default=None, help='Recalculate a single SKU')
@click.option('--batch-size', type=int, default=None)
def recalculate(store_key, marketplace, sku, batch_size):
    """Recalculate aggregates from item rows"""
    settings = get_settings()

    async def _run():
        async with async_session() as session:
            service = AggregationService(session, settings=settings)
            if sku:
                aggregate = await service.recalculate_sku(store_key, marketplace, sku)
                await session.commit()
                return {"sku": sku, "total_quantity": aggregate.total_quantity,
                        "marketplace_quantity": aggregate.marketplace_quantity,
                        "needs_sync": aggregate.needs_sync}
            return await service.recalculate_all(store_key, marketplace, batch_size)

    click.echo(json.dumps(asyncio.run(_run()), indent=2, default=str))


@aggregates.command(name='queue-out-of-sync')
@click.option('--store', 'store_key', required=True)
@click.option('--marketplace', type=click.Choice(MARKETPLACES), required=True)
def queue_out_of_sync(store_key, marketplace):
    """Enqueue a push for every aggregate that needs sync"""
    settings = get_settings()

    async def _run():
        async with async_session() as session:
            return await AggregationService(session, settings=settings).queue_out_of_sync(store_key, marketplace)

    click.echo(json.dumps(asyncio.run(_run()), indent=2, default=str))


@aggregates.command()
@click.option('--store', 'store_key', required=True)
@click.option('--sku', required=True)
@click.option('--quantity', type=int, required=True)
@click.option('--marketplace', type=click.Choice(MARKETPLACES), default=None)
@click.option('--apply', 'apply_changes', is_flag=True, help='Write the decrements (default is a dry run)')
def waterfall(store_key, sku, quantity, marketplace, apply_changes):
    """Remove sold quantity from locations in priority order"""
    settings = get_settings()

    async def _run():
        async with async_session() as session:
            return await AggregationService(session, settings=settings).decrement_waterfall(
                store_key, sku, quantity, marketplace=marketplace, dry_run=not apply_changes
            )

    click.echo(json.dumps(asyncio.run(_run()), indent=2, default=str))


if __name__ == "__main__":
    aggregates()
