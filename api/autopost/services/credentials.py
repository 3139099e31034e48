from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, replace
from datetime import timedelta

import httpx

from autopost.core.clock import Clock, utc_now
from autopost.core.crypto import CredentialCipher, CredentialCipherError
from autopost.services.models import ProviderConnection, truncate_error
from autopost.services.platforms import USER_AGENT, is_retryable_status, safe_json
from autopost.services.repository import JobStore

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_LOOKAHEAD = timedelta(seconds=60)


@dataclass(slots=True, frozen=True)
class RefreshSucceeded:
    connection: ProviderConnection


@dataclass(slots=True, frozen=True)
class RefreshFailed:
    detail: str
    retryable: bool
    status_code: int | None = None


RefreshResult = RefreshSucceeded | RefreshFailed


@dataclass(slots=True, frozen=True)
class AppCredentials:
    client_id: str | None
    client_secret: str | None


class CredentialResolver:
    """Loads per-owner provider connections and keeps their access tokens fresh.

    ``resolve`` returns ``None`` when the owner has no usable connection for the
    platform (no row, or no access token). ``refresh`` performs the OAuth2
    refresh-token grant and writes the new token set back to the store before
    returning it. Store errors propagate; HTTP transport errors propagate too and
    are treated as transient by the caller.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        token_urls: Mapping[str, str],
        app_credentials: Mapping[str, AppCredentials] | None = None,
        cipher: CredentialCipher | None = None,
        lookahead: timedelta = DEFAULT_REFRESH_LOOKAHEAD,
        timeout_seconds: float = 10.0,
        clock: Clock = utc_now,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.store = store
        self.token_urls = dict(token_urls)
        self.app_credentials = dict(app_credentials or {})
        self.cipher = cipher
        self.lookahead = lookahead
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self._client = client

    async def resolve(self, owner_id: str, platform: str) -> ProviderConnection | None:
        connection = await self.store.get_connection(owner_id, platform)
        if connection is None or not connection.connected:
            return None
        return connection

    def needs_refresh(self, connection: ProviderConnection) -> bool:
        # Unknown expiry means the lifetime simply was not recorded; leave it alone.
        if connection.expires_at is None:
            return False
        return connection.expires_at <= self.clock() + self.lookahead

    async def refresh(self, connection: ProviderConnection) -> RefreshResult:
        platform = connection.platform
        if not connection.refresh_token:
            return RefreshFailed(f"{platform} refresh impossible: no refresh token stored (re-auth required)", retryable=False)

        token_url = self.token_urls.get(platform)
        if not token_url:
            return RefreshFailed(f"{platform} refresh impossible: no token endpoint configured", retryable=False)

        try:
            client_id, client_secret = self._client_credentials(connection)
        except CredentialCipherError as exc:
            return RefreshFailed(f"{platform} refresh impossible: {exc}", retryable=False)
        if not client_id:
            return RefreshFailed(f"{platform} refresh impossible: no client id configured", retryable=False)

        form = {
            "grant_type": "refresh_token",
            "refresh_token": connection.refresh_token,
            "client_id": client_id,
        }
        auth = httpx.BasicAuth(client_id, client_secret) if client_secret else None
        headers = {"User-Agent": USER_AGENT}

        if self._client is not None:
            response = await self._client.post(token_url, data=form, auth=auth, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                response = await temp_client.post(token_url, data=form, auth=auth, headers=headers)

        payload = safe_json(response)
        if not response.is_success:
            detail = truncate_error(f"{platform} refresh failed ({response.status_code}): {payload}")
            return RefreshFailed(detail, retryable=is_retryable_status(response.status_code), status_code=response.status_code)

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token:
            detail = truncate_error(f"{platform} refresh returned no access_token: {payload}")
            return RefreshFailed(detail, retryable=False, status_code=response.status_code)

        now = self.clock()
        rotated = payload.get("refresh_token")
        refresh_token = rotated if isinstance(rotated, str) and rotated else connection.refresh_token
        expires_in = payload.get("expires_in")
        expires_at = now + timedelta(seconds=float(expires_in)) if isinstance(expires_in, (int, float)) else None

        await self.store.update_connection_tokens(
            connection.owner_id,
            platform,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            now=now,
        )
        logger.info(
            "refreshed provider token owner=%s platform=%s rotated_refresh=%s",
            connection.owner_id,
            platform,
            refresh_token != connection.refresh_token,
        )
        return RefreshSucceeded(
            replace(
                connection,
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                updated_at=now,
            )
        )

    def _client_credentials(self, connection: ProviderConnection) -> tuple[str | None, str | None]:
        fallback = self.app_credentials.get(connection.platform, AppCredentials(None, None))
        if connection.client_id:
            secret = None
            if connection.client_secret_enc:
                if self.cipher is None:
                    raise CredentialCipherError("no encryption key configured for stored client secret")
                secret = self.cipher.decrypt(connection.client_secret_enc)
            return connection.client_id, secret
        return fallback.client_id, fallback.client_secret
