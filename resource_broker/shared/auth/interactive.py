"""
Interactive (Delegated) Authentication

Authorization code flow with PKCE for a public client; no client secret is
ever transmitted.

Flow:
1. Start a one-shot loopback listener on an ephemeral port
2. Open the default browser at the authorization endpoint
3. Wait (up to the configured deadline) for the redirect with a code
4. Exchange code + verifier for access and refresh tokens
5. Later refreshes use the refresh token; a rejected refresh token raises
   RefreshRejected so the provider can fall back to step 1
"""
import asyncio
import base64
import hashlib
import secrets
import webbrowser
from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import urlencode

import httpx
import structlog

from resource_broker.shared.auth.base import AuthStrategy
from resource_broker.shared.auth.loopback import LoopbackCallbackServer
from resource_broker.shared.core.credentials import (
    AuthMode,
    CachedToken,
    InteractiveCredential,
)
from resource_broker.shared.core.exceptions import (
    AuthenticationCancelled,
    AuthenticationFailed,
    RefreshRejected,
)

logger = structlog.get_logger()

# Scopes always requested alongside the resource scope.
BASE_SCOPES = ("offline_access", "openid")
# Errors from the token endpoint meaning the refresh token is unusable.
REFRESH_REJECTION_ERRORS = {"invalid_grant", "interaction_required", "consent_required"}


def generate_pkce_pair() -> tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    verifier = secrets.token_urlsafe(64)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


class InteractiveAuth(AuthStrategy):
    mode = AuthMode.INTERACTIVE
    persist_tokens = True
    unattended = False

    def __init__(
        self,
        credential: InteractiveCredential,
        authority_host: str,
        *,
        timeout_seconds: float = 300.0,
        http_client: httpx.AsyncClient | None = None,
        browser_opener: Callable[[str], Any] | None = None,
    ):
        super().__init__(credential.identity)
        self.credential = credential
        self.authority = f"{authority_host.rstrip('/')}/{credential.tenant_id}/oauth2/v2.0"
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self._browser_opener = browser_opener or webbrowser.open
        self._pending: set[LoopbackCallbackServer] = set()

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.authority}/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority}/token"

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(20.0, connect=10.0),
            )
        return self._http_client

    def build_authorize_url(
        self, scope: str, redirect_uri: str, challenge: str, state: str
    ) -> str:
        query = urlencode(
            {
                "client_id": self.credential.client_id,
                "response_type": "code",
                "response_mode": "query",
                "redirect_uri": redirect_uri,
                "scope": " ".join((scope, *BASE_SCOPES)),
                "code_challenge": challenge,
                "code_challenge_method": "S256",
                "state": state,
            }
        )
        return f"{self.authorize_endpoint}?{query}"

    async def authenticate(self, scope: str) -> CachedToken:
        verifier, challenge = generate_pkce_pair()
        state = secrets.token_urlsafe(16)
        server = LoopbackCallbackServer(expected_state=state)
        redirect_uri = await server.start()
        self._pending.add(server)
        try:
            auth_url = self.build_authorize_url(scope, redirect_uri, challenge, state)
            logger.warning(
                "interactive_auth_required",
                tenant_id=self.credential.tenant_id,
                client_id=self.credential.client_id,
                msg="Opening browser for sign-in",
                url_hint=auth_url[:80],
            )
            await asyncio.to_thread(self._browser_opener, auth_url)
            response = await server.wait(self.timeout_seconds)
        finally:
            self._pending.discard(server)
            await server.close()

        token = await self._token_request(
            {
                "client_id": self.credential.client_id,
                "grant_type": "authorization_code",
                "code": response.code,
                "redirect_uri": redirect_uri,
                "code_verifier": verifier,
                "scope": " ".join((scope, *BASE_SCOPES)),
            },
            scope=scope,
        )
        logger.info(
            "interactive_auth_succeeded",
            tenant_id=self.credential.tenant_id,
            client_id=self.credential.client_id,
        )
        return token

    async def refresh(self, token: CachedToken) -> CachedToken:
        if token.refresh_token is None:
            raise RefreshRejected("No refresh token available")
        return await self._token_request(
            {
                "client_id": self.credential.client_id,
                "grant_type": "refresh_token",
                "refresh_token": token.refresh_token.get_secret_value(),
                "scope": " ".join((token.scope, *BASE_SCOPES)),
            },
            scope=token.scope,
            previous=token,
        )

    async def _token_request(
        self,
        form: dict[str, str],
        *,
        scope: str,
        previous: CachedToken | None = None,
    ) -> CachedToken:
        grant_type = form["grant_type"]
        try:
            response = await self._client().post(self.token_endpoint, data=form)
        except httpx.HTTPError as e:
            raise AuthenticationFailed(
                f"Token endpoint unreachable: {e}",
                details={"grant_type": grant_type},
            ) from e

        payload: dict[str, Any] = {}
        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code != 200:
            error = str(payload.get("error") or f"http_{response.status_code}")
            description = str(payload.get("error_description") or "").split("\n")[0]
            logger.warning(
                "token_endpoint_error",
                grant_type=grant_type,
                status_code=response.status_code,
                error=error,
            )
            if grant_type == "refresh_token" and error in REFRESH_REJECTION_ERRORS:
                raise RefreshRejected(
                    f"Refresh token rejected: {error}", details={"error": error}
                )
            raise AuthenticationFailed(
                f"Token request failed: {error} {description}".strip(),
                details={"error": error, "grant_type": grant_type},
            )

        access = payload.get("access_token")
        if not access:
            raise AuthenticationFailed("Token endpoint returned no access token")

        expires_in = int(payload.get("expires_in") or 3600)
        refresh = payload.get("refresh_token")
        if not refresh and previous is not None and previous.refresh_token is not None:
            refresh = previous.refresh_token.get_secret_value()

        return CachedToken(
            access_token=access,
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
            refresh_token=refresh,
            scope=scope,
            owner_key_hash=self.owner_key_hash,
        )

    async def cancel_pending(self, reason: AuthenticationCancelled) -> None:
        for server in list(self._pending):
            server.cancel(reason)
        self._pending.clear()

    async def close(self) -> None:
        await self.cancel_pending(AuthenticationCancelled("Token provider closed"))
        if self._owns_http_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
