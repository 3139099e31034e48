import logging

from fastapi import APIRouter, Depends, HTTPException, status

from autopost.api.errors import store_http_error
from autopost.core.security import get_human_principal
from autopost.dependencies import get_dispatch_engine
from autopost.schemas.cron import DispatchRunOut
from autopost.services.dispatch import DispatchEngine
from autopost.services.repository import StoreError

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/run-now", response_model=DispatchRunOut)
async def run_dispatch_now(
    principal=Depends(get_human_principal),
    engine: DispatchEngine = Depends(get_dispatch_engine),
) -> DispatchRunOut:
    try:
        principal.require_scopes({"admin:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    logger.info("manual dispatch requested by=%s", principal.email or principal.subject)
    try:
        summary = await engine.run_once()
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return DispatchRunOut.from_summary(summary)
