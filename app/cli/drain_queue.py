# app/cli/drain_queue.py
import asyncio
import json

import click

from app.core.config import get_settings
from app.core.enums import Marketplace
from app.database import async_session
from app.integrations.setup import build_registry
from app.services.sync_queue.drain_controller import DrainConfig, DrainController
from app.services.sync_queue.lease import ProcessorLease

MARKETPLACES = [m.value for m in Marketplace]


@click.command()
@click.option('--marketplace', type=click.Choice(MARKETPLACES), default=None, help='Only drain jobs for one marketplace')
@click.option('--concurrency', type=int, default=None, help='Jobs executed in parallel')
@click.option('--batch-size', type=int, default=None, help='Jobs claimed per iteration')
@click.option('--delay-ms', type=int, default=None, help='Pause between iterations')
@click.option('--max-iterations', type=int, default=None)
@click.option('--turbo', is_flag=True, help='Multiply concurrency and batch size, shorten the delay')
def drain(marketplace, concurrency, batch_size, delay_ms, max_iterations, turbo):
    """Run one drain session against the sync queue"""
    settings = get_settings()
    config = DrainConfig.from_settings(
        settings,
        marketplace=marketplace,
        concurrency=concurrency,
        batch_size=batch_size,
        item_delay=delay_ms / 1000.0 if delay_ms is not None else None,
        max_iterations=max_iterations,
    )
    if turbo:
        config = config.turbo(settings.DRAIN_TURBO_MULTIPLIER)

    async def _drain():
        controller = DrainController(async_session, build_registry(settings), settings=settings)
        return await controller.drain(config)

    result = asyncio.run(_drain())
    click.echo(json.dumps(result.to_dict(), indent=2, default=str))


@click.command(name='process-next')
@click.option('--marketplace', type=click.Choice(MARKETPLACES), default=None)
def process_next(marketplace):
    """Claim and execute a single queued job"""
    settings = get_settings()

    async def _step():
        controller = DrainController(async_session, build_registry(settings), settings=settings)
        return await controller.process_next(marketplace)

    step = asyncio.run(_step())
    if not step.claimed:
        click.echo("Queue is idle")
        return
    click.echo(f"Job {step.job_id}: {step.outcome}" + (f" ({step.error_type}: {step.error})" if step.error else ""))


@click.command(name='auto-drain')
@click.argument('state', type=click.Choice(['on', 'off', 'status']))
def auto_drain(state):
    """Switch server-side auto-drain on or off"""
    settings = get_settings()

    async def _toggle():
        async with async_session() as session:
            lease = ProcessorLease(session, ttl_seconds=settings.SYNC_LOCK_TTL_SECONDS)
            if state != 'status':
                await lease.set_auto_drain(state == 'on')
            return await lease.status()

    click.echo(json.dumps(asyncio.run(_toggle()), indent=2, default=str))


if __name__ == "__main__":
    drain()
