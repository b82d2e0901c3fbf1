"""Linked platform accounts: connect, OAuth callback, sync and disconnect."""

import hmac
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from config import settings
from services.platform_sync import PlatformSyncService
from services.platforms import (
    PLATFORM_CONFIG,
    Platform,
    PlatformError,
    UnknownPlatformError,
    parse_platform,
)
from services.stores import LinkedAccountStore
from utils.logger import api_logger as logger

router = APIRouter()

_ERROR_STATUS = {
    "authentication": 401,
    "rate_limited": 429,
    "upstream_unavailable": 502,
    "configuration": 503,
    "unknown_platform": 404,
}


class ConnectRequest(BaseModel):
    userId: str
    apiKey: Optional[str] = None
    apiSecret: Optional[str] = None


class SyncRequest(BaseModel):
    userId: str


def get_platform_sync_service() -> PlatformSyncService:
    return PlatformSyncService()


def _platform_or_404(platform: str) -> Platform:
    try:
        return parse_platform(platform)
    except UnknownPlatformError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


def config_name(platform: Platform) -> str:
    return PLATFORM_CONFIG[platform.value]["name"]


def _error_response(exc: PlatformError) -> JSONResponse:
    return JSONResponse(status_code=_ERROR_STATUS.get(exc.kind, 400), content={"error": str(exc), "kind": exc.kind})


def _settings_redirect(**params) -> RedirectResponse:
    return RedirectResponse(f"{settings.APP_URL}/settings/linked-accounts?{urlencode(params)}", status_code=302)


@router.get("/platforms")
async def list_platforms():
    return {"platforms": [{"id": key, **config} for key, config in PLATFORM_CONFIG.items()]}


@router.get("/platforms/linked")
async def list_linked_accounts(user_id: str = Query(..., alias="userId")):
    store = LinkedAccountStore()
    accounts = await store.list_for_user(user_id)
    return {"accounts": [store.to_public_dict(account) for account in accounts]}


@router.post("/platforms/sync-all")
async def sync_all_platforms(
    authorization: Optional[str] = Header(default=None),
    service: PlatformSyncService = Depends(get_platform_sync_service),
):
    """Sync every active linked account. Intended for a scheduled job."""
    if settings.CRON_SECRET:
        expected = f"Bearer {settings.CRON_SECRET}"
        if not authorization or not hmac.compare_digest(authorization, expected):
            raise HTTPException(status_code=401, detail="Unauthorized")
    summary = await service.sync_all()
    logger.info("Sync-all finished", synced=summary["synced"], failed=summary["failed"], total=summary["total"])
    return summary


@router.get("/platforms/betfair/callback")
async def betfair_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    service: PlatformSyncService = Depends(get_platform_sync_service),
):
    if error:
        logger.warning("Betfair OAuth denied", error=error)
        return _settings_redirect(error="Betfair authorization denied")
    if not code or not state:
        return _settings_redirect(error="Invalid callback parameters")
    try:
        await service.complete_oauth(code, state, Platform.BETFAIR.value)
    except PlatformError as exc:
        return _settings_redirect(error=str(exc))
    return _settings_redirect(success="betfair")


@router.post("/platforms/{platform}/connect")
async def connect_platform(
    platform: str,
    request: ConnectRequest,
    service: PlatformSyncService = Depends(get_platform_sync_service),
):
    resolved = _platform_or_404(platform)
    config = PLATFORM_CONFIG[resolved.value]
    try:
        if config["auth_type"] == "oauth":
            url = await service.begin_oauth(request.userId, resolved.value)
            return {"authorizationUrl": url}

        if not request.apiKey or not request.apiSecret:
            raise HTTPException(status_code=400, detail="apiKey and apiSecret are required")
        account = await service.connect_api_key(request.userId, resolved.value, request.apiKey, request.apiSecret)
    except PlatformError as exc:
        return _error_response(exc)
    return {"success": True, "account": LinkedAccountStore.to_public_dict(account)}


@router.post("/platforms/{platform}/sync")
async def sync_platform(
    platform: str,
    request: SyncRequest,
    service: PlatformSyncService = Depends(get_platform_sync_service),
):
    resolved = _platform_or_404(platform)
    result = await service.sync_user_platform(request.userId, resolved.value)
    if result is None:
        raise HTTPException(status_code=404, detail=f"No active {config_name(resolved)} account linked")

    body = {
        "success": result.success,
        "platform": result.platform,
        "balance": result.balance.model_dump() if result.balance else None,
        "positionsCount": len(result.positions),
        "tradesCount": len(result.trades),
        "tradesImported": result.trades_imported,
    }
    if not result.success:
        body["error"] = result.error
        body["errorKind"] = result.error_kind
    return body


@router.delete("/platforms/{platform}/disconnect")
async def disconnect_platform(
    platform: str,
    user_id: str = Query(..., alias="userId"),
    service: PlatformSyncService = Depends(get_platform_sync_service),
):
    resolved = _platform_or_404(platform)
    removed = await service.disconnect(user_id, resolved.value)
    if not removed:
        raise HTTPException(status_code=404, detail=f"No {config_name(resolved)} account linked")
    return {"success": True}

