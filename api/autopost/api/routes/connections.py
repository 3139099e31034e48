from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status

from autopost.api.errors import store_http_error
from autopost.core.clock import Clock
from autopost.core.config import Settings, get_settings
from autopost.core.security import get_human_principal
from autopost.dependencies import get_clock, get_platform_registry
from autopost.schemas.connections import ConnectionStatusOut, ConnectionTokensRequest
from autopost.services.platforms import PlatformRegistry
from autopost.services.repository import JobStore, StoreError, get_store
from autopost.services.schedules import record_reconnection

router = APIRouter()


def _authorize(principal, platform: str, platforms: PlatformRegistry) -> None:
    try:
        principal.require_scopes({"connection:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    if platforms.get(platform) is None or platforms.is_manual(platform):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unsupported platform: {platform}")


@router.get("/{platform}", response_model=ConnectionStatusOut)
async def get_connection_status(
    platform: str,
    principal=Depends(get_human_principal),
    store: JobStore = Depends(get_store),
    platforms: PlatformRegistry = Depends(get_platform_registry),
) -> ConnectionStatusOut:
    _authorize(principal, platform, platforms)

    try:
        connection = await store.get_connection(principal.subject, platform)
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return ConnectionStatusOut.from_connection(platform, connection)


@router.put("/{platform}", response_model=ConnectionStatusOut)
async def save_connection(
    platform: str,
    payload: ConnectionTokensRequest,
    principal=Depends(get_human_principal),
    store: JobStore = Depends(get_store),
    platforms: PlatformRegistry = Depends(get_platform_registry),
    settings: Settings = Depends(get_settings),
    clock: Clock = Depends(get_clock),
) -> ConnectionStatusOut:
    _authorize(principal, platform, platforms)

    now = clock()
    expires_at = payload.expires_at
    if expires_at is None and payload.expires_in is not None:
        expires_at = now + timedelta(seconds=payload.expires_in)

    try:
        connection, bumped = await record_reconnection(
            store,
            owner_id=principal.subject,
            platform=platform,
            access_token=payload.access_token,
            refresh_token=payload.refresh_token,
            expires_at=expires_at,
            scopes=payload.scopes,
            now=now,
            bump_delay=timedelta(seconds=settings.reconnect_bump_delay_seconds),
        )
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return ConnectionStatusOut.from_connection(platform, connection, bumped_jobs=bumped)


@router.delete("/{platform}", response_model=ConnectionStatusOut)
async def disconnect(
    platform: str,
    principal=Depends(get_human_principal),
    store: JobStore = Depends(get_store),
    platforms: PlatformRegistry = Depends(get_platform_registry),
    clock: Clock = Depends(get_clock),
) -> ConnectionStatusOut:
    _authorize(principal, platform, platforms)

    try:
        await store.disconnect(principal.subject, platform, now=clock())
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return ConnectionStatusOut.from_connection(platform, None)
