# app/routes/sync_rules.py
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, get_settings
from app.core.enums import Marketplace
from app.core.exceptions import BaseServiceError
from app.dependencies import get_db
from app.routes.sync_queue import http_error
from app.schemas.sync import StoreScope, SyncRuleCreate, SyncRuleRead, SyncRuleUpdate
from app.services.sync_rules import SyncRuleService

router = APIRouter(prefix="/api/sync/rules", tags=["Sync Rules"])


@router.get("", response_model=List[SyncRuleRead])
async def list_rules(
    store_key: Optional[str] = None,
    marketplace: Optional[Marketplace] = None,
    active_only: bool = False,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await SyncRuleService(db, settings=settings).list_rules(store_key, marketplace, active_only)


@router.post("", response_model=SyncRuleRead, status_code=201)
async def create_rule(
    request: SyncRuleCreate,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    data = request.model_dump(exclude={"store_key", "marketplace"}, mode="json")
    try:
        return await SyncRuleService(db, settings=settings).create_rule(request.store_key, request.marketplace, data)
    except BaseServiceError as e:
        raise http_error(e)


@router.get("/{rule_id}", response_model=SyncRuleRead)
async def get_rule(rule_id: int, db: AsyncSession = Depends(get_db), settings: Settings = Depends(get_settings)):
    try:
        return await SyncRuleService(db, settings=settings).get_rule(rule_id)
    except BaseServiceError as e:
        raise http_error(e)


@router.patch("/{rule_id}", response_model=SyncRuleRead)
async def update_rule(
    rule_id: int,
    request: SyncRuleUpdate,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    data = request.model_dump(exclude_unset=True, mode="json")
    try:
        return await SyncRuleService(db, settings=settings).update_rule(rule_id, data)
    except BaseServiceError as e:
        raise http_error(e)


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(rule_id: int, db: AsyncSession = Depends(get_db), settings: Settings = Depends(get_settings)):
    try:
        await SyncRuleService(db, settings=settings).delete_rule(rule_id)
    except BaseServiceError as e:
        raise http_error(e)


@router.post("/preview")
async def preview_rules(
    request: StoreScope,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await SyncRuleService(db, settings=settings).preview(request.store_key, request.marketplace)


@router.post("/apply")
async def apply_rules(
    request: StoreScope,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return await SyncRuleService(db, settings=settings).apply(request.store_key, request.marketplace)
