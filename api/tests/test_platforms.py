from __future__ import annotations

import asyncio
import json

import httpx

from autopost.services.models import ProviderConnection
from autopost.services.platforms import (
    AuthError,
    PermanentError,
    RetryableError,
    Sent,
    XPlatformClient,
    build_platform_registry,
    classify_post_response,
)
from support import mock_client


def test_classify_post_response_maps_status_codes() -> None:
    assert classify_post_response("x", 201, {"data": {"id": "55", "text": "hi"}}) == Sent("55")
    assert isinstance(classify_post_response("x", 401, {"title": "Unauthorized"}), AuthError)
    assert isinstance(classify_post_response("x", 429, {}), RetryableError)
    assert isinstance(classify_post_response("x", 408, {}), RetryableError)
    assert isinstance(classify_post_response("x", 502, "bad gateway"), RetryableError)
    assert isinstance(classify_post_response("x", 400, {"detail": "bad"}), PermanentError)


def test_duplicate_content_is_flagged() -> None:
    outcome = classify_post_response(
        "x",
        403,
        {"detail": "You are not allowed to create a Tweet with duplicate content."},
    )

    assert isinstance(outcome, PermanentError)
    assert outcome.reason == "duplicate"
    assert classify_post_response("x", 403, {"detail": "forbidden"}).reason is None


def test_x_client_posts_text_with_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"data": {"id": "1234567890"}})

    client = XPlatformClient(base_url="https://api.x.test/", timeout_seconds=5.0, client=mock_client(handler))
    connection = ProviderConnection(owner_id="user-1", platform="x", access_token="token-abc")

    outcome = asyncio.run(client.post(connection, "shipping today"))

    assert outcome == Sent("1234567890")
    assert str(seen[0].url) == "https://api.x.test/2/tweets"
    assert seen[0].headers["Authorization"] == "Bearer token-abc"
    assert json.loads(seen[0].content) == {"text": "shipping today"}


def test_x_client_reports_auth_error_without_token() -> None:
    client = XPlatformClient(base_url="https://api.x.test", timeout_seconds=5.0)
    connection = ProviderConnection(owner_id="user-1", platform="x", access_token=None)

    assert isinstance(asyncio.run(client.post(connection, "hi")), AuthError)


def test_registry_separates_manual_platforms() -> None:
    registry = build_platform_registry(x_api_base_url="https://api.x.test", timeout_seconds=5.0)

    assert registry.tags() == ["threads", "x"]
    assert registry.is_manual("threads")
    assert not registry.is_manual("x")
    assert registry.get("X") is registry.get("x")
    assert registry.get("mastodon") is None
