# app/cli/create_tables.py
import asyncio
import click

from app.database import Base, build_engine

# Import all models to ensure they're registered with the Base
from app import models  # noqa: F401

@click.command()
@click.option('--echo/--no-echo', default=False, help='Echo the generated DDL')
def create_tables(echo):
    """Create all database tables directly using SQLAlchemy"""
    from app.core.config import get_settings
    settings = get_settings()

    async def _create_tables():
        engine = build_engine(settings.DATABASE_URL, echo=echo)
        async with engine.begin() as conn:
            # This will create all tables defined in models that inherit from Base
            await conn.run_sync(Base.metadata.create_all)
        await engine.dispose()
        click.echo("All tables created successfully!")

    asyncio.run(_create_tables())

if __name__ == "__main__":
    create_tables()
