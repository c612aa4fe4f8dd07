from fastapi import APIRouter, Depends
from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.dependencies import get_db, get_registry
from app.integrations.setup import MarketplaceRegistry

router = APIRouter(tags=["health"])

@router.get("/health")
async def health_check(
    registry: MarketplaceRegistry = Depends(get_registry),
    settings: Settings = Depends(get_settings),
):
    """Basic health check"""
    return {
        "status": "healthy",
        "service": "Inventory Sync Engine",
        "environment": settings.ENVIRONMENT,
        "marketplaces": sorted(registry),
    }

@router.get("/health/db")
async def database_health(db: AsyncSession = Depends(get_db)):
    """Check database connectivity and tables"""
    try:
        await db.execute(text("SELECT 1"))
        connection = await db.connection()
        tables = await connection.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        return {
            "status": "healthy",
            "database": "connected",
            "tables_count": len(tables),
            "tables": sorted(tables),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "database": "error",
            "error": str(e)
        }
