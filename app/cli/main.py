# app/cli/main.py
import click

from app.core.logging_config import configure_logging
from app.cli.aggregates import aggregates
from app.cli.create_tables import create_tables
from app.cli.drain_queue import auto_drain, drain, process_next
from app.cli.reconcile import reconcile
from app.cli.resolve_duplicates import duplicates
from app.cli.sync_rules import rules


@click.group()
def cli():
    """Inventory sync engine commands"""
    configure_logging()


cli.add_command(create_tables)
cli.add_command(drain)
cli.add_command(process_next)
cli.add_command(auto_drain)
cli.add_command(reconcile)
cli.add_command(duplicates)
cli.add_command(aggregates)
cli.add_command(rules)


if __name__ == "__main__":
    cli()
