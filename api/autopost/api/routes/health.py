from fastapi import APIRouter, Depends

from autopost.core.config import Settings, get_settings
from autopost.dependencies import get_platform_registry
from autopost.services.platforms import PlatformRegistry

router = APIRouter()


@router.get("/")
async def root(
    settings: Settings = Depends(get_settings),
    platforms: PlatformRegistry = Depends(get_platform_registry),
) -> dict[str, object]:
    return {
        "status": "ok",
        "service": settings.app_name,
        "platforms": {tag: "manual" if platforms.is_manual(tag) else "automated" for tag in platforms.tags()},
    }


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}
