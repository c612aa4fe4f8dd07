# app/cli/sync_rules.py
import asyncio
import json

import click

from app.core.config import get_settings
from app.core.enums import Marketplace
from app.database import async_session
from app.services.sync_rules import SyncRuleService


@click.command(name='rules')
@click.argument('mode', type=click.Choice(['preview', 'apply']))
@click.option('--store', 'store_key', required=True)
@click.option('--marketplace', type=click.Choice([m.value for m in Marketplace]), required=True)
def rules(mode, store_key, marketplace):
    """Preview or apply the sync rules for unlisted items"""
    settings = get_settings()

    async def _run():
        async with async_session() as session:
            service = SyncRuleService(session, settings=settings)
            if mode == 'preview':
                return await service.preview(store_key, marketplace)
            return await service.apply(store_key, marketplace)

    click.echo(json.dumps(asyncio.run(_run()), indent=2, default=str))


if __name__ == "__main__":
    rules()
