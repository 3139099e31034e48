from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from autopost.services.models import ProviderConnection, truncate_error

DUPLICATE_CONTENT_MARKERS = ("duplicate",)
USER_AGENT = "autopost-dispatch/1.0"

# Per-platform text limits enforced when a post is composed, never at dispatch.
TEXT_LIMITS: dict[str, int] = {
    "x": 280,
    "threads": 500,
}


@dataclass(slots=True, frozen=True)
class Sent:
    external_id: str | None


@dataclass(slots=True, frozen=True)
class RetryableError:
    detail: str


@dataclass(slots=True, frozen=True)
class AuthError:
    detail: str


@dataclass(slots=True, frozen=True)
class PermanentError:
    detail: str
    reason: str | None = None


PostOutcome = Sent | RetryableError | AuthError | PermanentError


def is_retryable_status(status_code: int) -> bool:
    return status_code in {408, 429} or 500 <= status_code <= 599


def classify_post_response(platform: str, status_code: int, body: Any) -> PostOutcome:
    """Map a platform's HTTP answer onto the four dispatch outcomes."""
    if 200 <= status_code < 300:
        return Sent(external_id=_extract_post_id(body))

    detail = truncate_error(f"{platform} post failed ({status_code}): {_render_body(body)}")
    if status_code == 401:
        return AuthError(detail)
    if is_retryable_status(status_code):
        return RetryableError(detail)
    if status_code == 403 and _mentions_duplicate(body):
        return PermanentError(detail, reason="duplicate")
    return PermanentError(detail)


class AutomatedPlatform(Protocol):
    tag: str

    async def post(self, connection: ProviderConnection, text: str) -> PostOutcome: ...


@dataclass(slots=True, frozen=True)
class ManualAssistPlatform:
    """A platform whose posts are made by a person; the engine only escalates them."""

    tag: str
    display_name: str

    @property
    def escalation_message(self) -> str:
        return f"{self.display_name} posts are published manually; post it by hand, then mark the job complete."


Platform = AutomatedPlatform | ManualAssistPlatform


class XPlatformClient:
    tag = "x"

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def post(self, connection: ProviderConnection, text: str) -> PostOutcome:
        if not connection.access_token:
            return AuthError("x post skipped: no access token stored for this connection")

        headers = {
            "Authorization": f"Bearer {connection.access_token}",
            "User-Agent": USER_AGENT,
        }
        url = f"{self.base_url}/2/tweets"
        if self._client is not None:
            response = await self._client.post(url, json={"text": text}, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                response = await temp_client.post(url, json={"text": text}, headers=headers)

        return classify_post_response(self.tag, response.status_code, safe_json(response))


class PlatformRegistry:
    def __init__(self, platforms: list[Platform]) -> None:
        self._platforms: dict[str, Platform] = {platform.tag: platform for platform in platforms}

    def get(self, tag: str) -> Platform | None:
        return self._platforms.get(tag.lower())

    def tags(self) -> list[str]:
        return sorted(self._platforms)

    def is_manual(self, tag: str) -> bool:
        return isinstance(self.get(tag), ManualAssistPlatform)


def build_platform_registry(
    *,
    x_api_base_url: str,
    timeout_seconds: float,
    client: httpx.AsyncClient | None = None,
) -> PlatformRegistry:
    return PlatformRegistry(
        [
            XPlatformClient(base_url=x_api_base_url, timeout_seconds=timeout_seconds, client=client),
            ManualAssistPlatform(tag="threads", display_name="Threads"),
        ]
    )


def safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text[:500]} if response.text else {}


def _extract_post_id(body: Any) -> str | None:
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return str(data["id"])
    if body.get("id") is not None:
        return str(body["id"])
    return None


def _mentions_duplicate(body: Any) -> bool:
    rendered = _render_body(body).lower()
    return any(marker in rendered for marker in DUPLICATE_CONTENT_MARKERS)


def _render_body(body: Any) -> str:
    if isinstance(body, str):
        return body
    try:
        return json.dumps(body, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return str(body)
