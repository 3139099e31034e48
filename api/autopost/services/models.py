from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from autopost.core.clock import coerce_instant

JobStatus = Literal[
    "pending",
    "running",
    "sent",
    "failed",
    "auth_required",
    "needs_user_action",
    "cancelled",
]

JOB_STATUSES: frozenset[str] = frozenset(
    {"pending", "running", "sent", "failed", "auth_required", "needs_user_action", "cancelled"}
)
CANCELLABLE_STATUSES: tuple[str, ...] = ("pending", "running", "needs_user_action")
COMPLETABLE_STATUSES: tuple[str, ...] = ("needs_user_action", "pending", "running")
REAUTH_STATUSES: tuple[str, ...] = ("needs_user_action", "auth_required")

LAST_ERROR_MAX_LENGTH = 1500

_AUTH_ERROR_MARKERS = ("401", "403", "not connected", "refresh", "re-auth", "reconnect", "invalid_grant")


@dataclass(slots=True)
class Job:
    id: str
    owner_id: str
    platform: str
    text: str
    run_at: datetime
    status: str
    attempts: int = 0
    group_id: str | None = None
    draft_id: str | None = None
    last_error: str | None = None
    external_post_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def reconnect_suggested(self) -> bool:
        if self.status not in REAUTH_STATUSES or not self.last_error:
            return False
        lowered = self.last_error.lower()
        return any(marker in lowered for marker in _AUTH_ERROR_MARKERS)


@dataclass(slots=True)
class ProviderConnection:
    owner_id: str
    platform: str
    access_token: str | None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    client_id: str | None = None
    client_secret_enc: str | None = None
    scopes: list[str] = field(default_factory=list)
    updated_at: datetime | None = None

    @property
    def connected(self) -> bool:
        return bool(self.access_token)


@dataclass(slots=True)
class AlertDedupeRecord:
    signature: str
    kind: str
    last_sent_at: datetime | None
    sent_count: int
    last_subject: str | None = None
    updated_at: datetime | None = None


def truncate_error(message: str, limit: int = LAST_ERROR_MAX_LENGTH) -> str:
    return message if len(message) <= limit else message[:limit]


def job_from_row(row: Mapping[str, Any]) -> Job:
    """Build the canonical ``Job`` from a storage row.

    Older rows spell some columns differently (``provider``/``user_id``/``tweet_id``)
    or carry a null attempt counter; those are folded in here so nothing past the
    store boundary has to care.
    """
    run_at = coerce_instant(_first(row, "run_at", "runAt"))
    if run_at is None:
        raise ValueError(f"job {row.get('id')!r} has no usable run_at")

    platform = _text(_first(row, "platform", "provider")) or ""
    return Job(
        id=str(row["id"]),
        owner_id=str(_first(row, "owner_id", "user_id", "ownerId")),
        platform=platform.lower(),
        text=str(row.get("text") or ""),
        run_at=run_at,
        status=_text(row.get("status")) or "pending",
        attempts=_int(row.get("attempts")),
        group_id=_text(_first(row, "group_id", "groupId")),
        draft_id=_text(_first(row, "draft_id", "draftId")),
        last_error=_text(_first(row, "last_error", "lastError")),
        external_post_id=_text(_first(row, "external_post_id", "tweet_id", "externalPostId")),
        created_at=coerce_instant(row.get("created_at")),
        updated_at=coerce_instant(_first(row, "updated_at", "updatedAt")),
    )


def connection_from_row(row: Mapping[str, Any]) -> ProviderConnection:
    scopes = row.get("scopes")
    if isinstance(scopes, str):
        scope_list = [chunk for chunk in scopes.replace(",", " ").split() if chunk]
    elif isinstance(scopes, (list, tuple)):
        scope_list = [str(item) for item in scopes if item]
    else:
        scope_list = []

    return ProviderConnection(
        owner_id=str(_first(row, "owner_id", "user_id")),
        platform=(_text(_first(row, "platform", "provider")) or "").lower(),
        access_token=_text(_first(row, "access_token", "x_access_token")),
        refresh_token=_text(_first(row, "refresh_token", "x_refresh_token")),
        expires_at=coerce_instant(_first(row, "expires_at", "x_expires_at")),
        client_id=_text(_first(row, "client_id", "x_client_id")),
        client_secret_enc=_text(_first(row, "client_secret_enc", "x_client_secret_enc")),
        scopes=scope_list,
        updated_at=coerce_instant(row.get("updated_at")),
    )


def _first(row: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = row.get(key)
        if value is not None:
            return value
    return None


def _text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _int(value: Any) -> int:
    if value is None:
        return 0
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0
