# app/cli/resolve_duplicates.py
import asyncio
import json

import click

from app.core.config import get_settings
from app.core.enums import Marketplace
from app.database import async_session
from app.integrations.setup import build_registry
from app.services.duplicate_service import DuplicateService


@click.command()
@click.option('--store', 'store_key', required=True)
@click.option('--marketplace', type=click.Choice([m.value for m in Marketplace]), required=True)
@click.option('--natural-key', default=None, help='Resolve only this group')
@click.option('--scan-only', is_flag=True, help='List duplicate groups and exit')
@click.option('--dry-run', is_flag=True)
def duplicates(store_key, marketplace, natural_key, scan_only, dry_run):
    """Collapse inventory records that share a natural key"""
    settings = get_settings()

    async def _run():
        async with async_session() as session:
            service = DuplicateService(session, build_registry(settings), settings=settings)
            if scan_only:
                groups = await service.find_duplicate_groups(store_key, marketplace)
                return {"groups": [g.to_dict() for g in groups], "count": len(groups)}
            if natural_key:
                return await service.resolve_group(store_key, marketplace, natural_key, dry_run=dry_run)
            return await service.resolve_all(store_key, marketplace, dry_run=dry_run)

    click.echo(json.dumps(asyncio.run(_run()), indent=2, default=str))


if __name__ == "__main__":
    duplicates()
