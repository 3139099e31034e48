from fastapi import APIRouter, Depends, HTTPException, status

from autopost.api.errors import store_http_error
from autopost.core.security import get_human_principal
from autopost.dependencies import get_dispatch_engine, get_platform_registry
from autopost.schemas.posts import PublishRequest, PublishResponse
from autopost.services.dispatch import DispatchEngine, DispatchOutcome, ReauthRequired
from autopost.services.platforms import AuthError, PermanentError, PlatformRegistry, RetryableError, Sent
from autopost.services.repository import StoreError
from autopost.services.schedules import ScheduleValidationError, validate_post_text

router = APIRouter()


@router.post("", response_model=PublishResponse)
async def publish_post(
    payload: PublishRequest,
    principal=Depends(get_human_principal),
    engine: DispatchEngine = Depends(get_dispatch_engine),
    platforms: PlatformRegistry = Depends(get_platform_registry),
) -> PublishResponse:
    """Publish right away instead of scheduling; nothing is queued on failure."""
    try:
        principal.require_scopes({"post:write"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    tag = payload.platform.strip().lower()
    if platforms.get(tag) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"unsupported platform: {tag}")
    if platforms.is_manual(tag):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"{tag} posts are published manually; schedule the post instead",
        )

    try:
        validate_post_text(payload.text, [tag])
    except ScheduleValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc

    try:
        outcome = await engine.publish_now(principal.subject, tag, payload.text)
    except StoreError as exc:
        raise store_http_error(exc) from exc

    return _publish_response(tag, outcome)


def _publish_response(platform: str, outcome: DispatchOutcome) -> PublishResponse:
    if isinstance(outcome, Sent):
        return PublishResponse(platform=platform, external_post_id=outcome.external_id)
    if isinstance(outcome, (ReauthRequired, AuthError)):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=outcome.detail)
    if isinstance(outcome, RetryableError):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=outcome.detail)
    if isinstance(outcome, PermanentError) and outcome.reason == "duplicate":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=outcome.detail)
    raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=outcome.detail)
