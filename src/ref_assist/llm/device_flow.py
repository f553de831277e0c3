from __future__ import annotations

import asyncio
import json
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import httpx

from ref_assist.hooks.observability import EventLogger
from ref_assist.hooks.security import mask_sensitive_text

from .errors import (
    AccessDeniedError,
    AssistantError,
    AuthenticationInProgressError,
    CopilotTokenError,
    DeviceCodeExpiredError,
    DeviceFlowCancelledError,
    DeviceFlowError,
    ProtocolError,
    ProviderUnavailableError,
    ReauthenticationRequiredError,
)
from .models import AuthResult, DeviceCode, DeviceFlowState, GitHubUser, SessionToken
from .provider_auth import build_copilot_token_headers, build_github_headers
from .vault import COPILOT_REALMS, COPILOT_SESSION_REALM, GITHUB_TOKEN_REALM, CredentialVault, metadata_datetime

CLIENT_ID = "Iv1.b507a08c87ecfe98"
DEVICE_CODE_URL = "https://github.com/login/device/code"
ACCESS_TOKEN_URL = "https://github.com/login/oauth/access_token"
COPILOT_TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"
USER_INFO_URL = "https://api.github.com/user"
DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
MIN_POLL_INTERVAL_SECONDS = 5
SLOW_DOWN_INCREMENT_SECONDS = 5
DEFAULT_DEVICE_CODE_TTL_SECONDS = 900

StatusCallback = Callable[[str], None]
ShowCodeCallback = Callable[[str, str], None]


@dataclass
class DeviceFlowSession:
    device_code: str
    user_code: str
    verification_uri: str
    expires_at: datetime
    poll_interval_seconds: float
    flow_id: str = field(default_factory=lambda: secrets.token_urlsafe(12))
    cancelled: asyncio.Event = field(default_factory=asyncio.Event)


class DeviceFlowClient:
    """
    GitHub device authorization flow for Copilot:
    - start_device_flow(): request device + user code
    - poll_for_token(): wait for approval and return the GitHub access token
    - get_copilot_token(): exchange the access token for a short-lived session token
    - get_session_token(): refresh-on-demand entry point used by every chat request
    """

    def __init__(
        self,
        vault: CredentialVault,
        *,
        client_id: str = CLIENT_ID,
        request_timeout_seconds: float = 15.0,
        refresh_leeway_seconds: int = 300,
        transport: httpx.AsyncBaseTransport | None = None,
        logger: EventLogger | None = None,
    ) -> None:
        self.vault = vault
        self.client_id = client_id
        self.request_timeout_seconds = request_timeout_seconds
        self.refresh_leeway = timedelta(seconds=max(0, refresh_leeway_seconds))
        self.transport = transport
        self.logger = logger or vault.logger
        self.state = DeviceFlowState.IDLE
        self._session: DeviceFlowSession | None = None
        self._authenticating = False

    @property
    def active_session(self) -> DeviceFlowSession | None:
        return self._session

    async def start_device_flow(self) -> DeviceCode:
        self._invalidate_session()
        self.state = DeviceFlowState.IDLE
        self.logger.on_auth_step("device_code_requested")
        try:
            async with self._client() as client:
                response = await client.post(
                    DEVICE_CODE_URL,
                    headers=build_github_headers(),
                    json={"client_id": self.client_id},
                )
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"device code request failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderUnavailableError(f"device code request failed: HTTP {response.status_code}")

        payload = _json_object(response, "device code")
        if payload.get("error"):
            raise ProtocolError(str(payload.get("error_description") or payload["error"]))
        device_code = payload.get("device_code")
        user_code = payload.get("user_code")
        verification_uri = payload.get("verification_uri")
        if not all(isinstance(value, str) and value for value in (device_code, user_code, verification_uri)):
            raise ProtocolError("device code response is missing required fields")

        expires_in = _positive_int(payload.get("expires_in")) or DEFAULT_DEVICE_CODE_TTL_SECONDS
        interval = _positive_int(payload.get("interval")) or MIN_POLL_INTERVAL_SECONDS
        session = DeviceFlowSession(
            device_code=device_code,
            user_code=user_code,
            verification_uri=verification_uri,
            expires_at=_utcnow() + timedelta(seconds=expires_in),
            poll_interval_seconds=max(interval, MIN_POLL_INTERVAL_SECONDS),
        )
        self._invalidate_session()
        self._session = session
        self.state = DeviceFlowState.CODE_REQUESTED
        self.logger.on_auth_step("device_code_issued", flow_id=session.flow_id, expires_in=expires_in)
        return DeviceCode(user_code=user_code, verification_uri=verification_uri, expires_in=expires_in)

    async def poll_for_token(
        self,
        on_status: StatusCallback | None = None,
        signal: asyncio.Event | None = None,
    ) -> str:
        session = self._session
        if session is None:
            raise DeviceFlowError("No active device flow. Call start_device_flow first.")

        self.state = DeviceFlowState.AWAITING_APPROVAL
        wake_events = (session.cancelled,) if signal is None else (session.cancelled, signal)
        async with self._client() as client:
            while True:
                self._ensure_active(session, signal)
                if _utcnow() >= session.expires_at:
                    self._finish(session, DeviceFlowState.EXPIRED)
                    raise DeviceCodeExpiredError()

                try:
                    payload = await self._request_access_token(client, session)
                except AssistantError:
                    self._ensure_active(session, signal)
                    self._finish(session, DeviceFlowState.FAILED)
                    raise
                self._ensure_active(session, signal)

                error = payload.get("error")
                if error == "authorization_pending":
                    if on_status is not None:
                        on_status("waiting")
                elif error == "slow_down":
                    session.poll_interval_seconds += SLOW_DOWN_INCREMENT_SECONDS
                    self.logger.on_auth_step(
                        "poll_slow_down",
                        flow_id=session.flow_id,
                        interval=session.poll_interval_seconds,
                    )
                elif error == "expired_token":
                    self._finish(session, DeviceFlowState.EXPIRED)
                    raise DeviceCodeExpiredError()
                elif error == "access_denied":
                    self._finish(session, DeviceFlowState.FAILED)
                    raise AccessDeniedError()
                elif error:
                    self._finish(session, DeviceFlowState.FAILED)
                    raise ProtocolError(str(payload.get("error_description") or error))
                else:
                    access_token = payload.get("access_token")
                    if not isinstance(access_token, str) or not access_token:
                        self._finish(session, DeviceFlowState.FAILED)
                        raise ProtocolError("Unexpected response from GitHub")
                    self._finish(session, DeviceFlowState.EXCHANGING)
                    if on_status is not None:
                        on_status("success")
                    self.logger.on_auth_step("device_flow_approved", flow_id=session.flow_id)
                    return access_token

                await _pause(session.poll_interval_seconds, wake_events)

    async def get_copilot_token(self, access_token: str) -> SessionToken:
        self.logger.on_auth_step("session_token_requested")
        try:
            async with self._client() as client:
                response = await client.get(
                    COPILOT_TOKEN_URL,
                    headers=build_copilot_token_headers(access_token),
                )
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"Copilot token request failed: {exc}") from exc

        if response.status_code >= 400:
            error = _copilot_token_error(response.status_code, response.text)
            self.logger.on_auth_step("session_token_rejected", kind=error.kind, status=response.status_code)
            raise error
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProtocolError("Invalid response from Copilot token endpoint") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("token"), str) or not payload["token"]:
            raise ProtocolError("No token in Copilot response")
        return SessionToken.from_token_response(payload)

    async def get_user_info(self, access_token: str) -> GitHubUser | None:
        try:
            async with self._client() as client:
                response = await client.get(USER_INFO_URL, headers=build_github_headers(access_token))
            if response.status_code >= 400:
                raise RuntimeError(f"HTTP {response.status_code}")
            payload = response.json()
            return GitHubUser(
                id=payload.get("id"),
                login=payload.get("login"),
                name=payload.get("name"),
                avatar_url=payload.get("avatar_url"),
            )
        except Exception as exc:
            self.logger.on_auth_step("user_info_unavailable", error=str(exc))
            return None

    async def authenticate(
        self,
        on_show_code: ShowCodeCallback | None = None,
        on_status: StatusCallback | None = None,
        signal: asyncio.Event | None = None,
    ) -> AuthResult:
        if self._authenticating:
            raise AuthenticationInProgressError()
        self._authenticating = True
        try:
            device_code = await self.start_device_flow()
            if on_show_code is not None:
                on_show_code(device_code.user_code, device_code.verification_uri)

            access_token = await self.poll_for_token(on_status, signal=signal)
            try:
                session_token = await self.get_copilot_token(access_token)
            except AssistantError:
                self.state = DeviceFlowState.FAILED
                raise
            user = await self.get_user_info(access_token)

            metadata: dict[str, Any] = {"user": user.model_dump(mode="json")} if user else {}
            persisted = self.vault.store(GITHUB_TOKEN_REALM, access_token, metadata)
            persisted = self._store_session_token(session_token) and persisted
            if not persisted:
                self.logger.on_auth_step("credentials_not_persisted")

            self.state = DeviceFlowState.AUTHENTICATED
            self.logger.on_auth_step("authenticated", login=user.login if user else None)
            return AuthResult(access_token=access_token, session_token=session_token, user=user)
        finally:
            self._authenticating = False

    async def get_session_token(self) -> str:
        record = self.vault.load(COPILOT_SESSION_REALM)
        if record is not None and record.secret:
            expires_at = metadata_datetime(record.metadata, "expires_at")
            if expires_at is not None and expires_at > _utcnow() + self.refresh_leeway:
                return record.secret

        self.logger.on_auth_step("session_refresh")
        auth = self.vault.load(GITHUB_TOKEN_REALM)
        if auth is None or not auth.secret:
            self.disconnect()
            raise ReauthenticationRequiredError("Not authenticated. Please connect to GitHub Copilot.")

        try:
            session_token = await self.get_copilot_token(auth.secret)
        except CopilotTokenError as exc:
            if exc.kind == "invalid_token":
                self.disconnect()
                raise ReauthenticationRequiredError() from exc
            raise
        self._store_session_token(session_token)
        return session_token.value

    async def has_valid_session(self) -> bool:
        try:
            token = await self.get_session_token()
        except AssistantError:
            return False
        return bool(token)

    def stored_user(self) -> GitHubUser | None:
        record = self.vault.load(GITHUB_TOKEN_REALM)
        if record is None:
            return None
        user = record.metadata.get("user")
        if not isinstance(user, dict):
            return None
        return GitHubUser.model_validate(user)

    def disconnect(self) -> None:
        self.vault.clear(COPILOT_REALMS)
        self.logger.on_auth_step("disconnected")

    def cancel_flow(self) -> None:
        self._invalidate_session()
        self.state = DeviceFlowState.IDLE

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.request_timeout_seconds),
            transport=self.transport,
        )

    async def _request_access_token(
        self,
        client: httpx.AsyncClient,
        session: DeviceFlowSession,
    ) -> dict[str, Any]:
        try:
            response = await client.post(
                ACCESS_TOKEN_URL,
                headers=build_github_headers(),
                json={
                    "client_id": self.client_id,
                    "device_code": session.device_code,
                    "grant_type": DEVICE_CODE_GRANT_TYPE,
                },
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"access token request failed: {exc}") from exc
        if response.status_code >= 500:
            raise ProviderUnavailableError(f"access token request failed: HTTP {response.status_code}")
        return _json_object(response, "access token")

    def _store_session_token(self, session_token: SessionToken) -> bool:
        return self.vault.store(
            COPILOT_SESSION_REALM,
            session_token.value,
            {"expires_at": session_token.expires_at.timestamp()},
        )

    def _ensure_active(self, session: DeviceFlowSession, signal: asyncio.Event | None) -> None:
        if signal is not None and signal.is_set():
            if self._session is session:
                self.cancel_flow()
            raise DeviceFlowCancelledError()
        if session.cancelled.is_set() or self._session is not session:
            raise DeviceFlowCancelledError()

    def _finish(self, session: DeviceFlowSession, state: DeviceFlowState) -> None:
        if self._session is session:
            self._session = None
        self.state = state

    def _invalidate_session(self) -> None:
        if self._session is not None:
            self._session.cancelled.set()
            self.logger.on_auth_step("device_flow_discarded", flow_id=self._session.flow_id)
        self._session = None


async def _pause(seconds: float, wake_events: tuple[asyncio.Event, ...]) -> None:
    waiters = [asyncio.ensure_future(event.wait()) for event in wake_events]
    try:
        await asyncio.wait(waiters, timeout=seconds, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_object(response: httpx.Response, label: str) -> dict[str, Any]:
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProtocolError(f"{label} response is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise ProtocolError(f"{label} response is not a JSON object")
    return payload


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) and value > 0:
        return int(value)
    return None


def _copilot_token_error(status_code: int, text: str) -> CopilotTokenError:
    if status_code == 401:
        return CopilotTokenError(
            "GitHub token is invalid or expired. Please re-authenticate.",
            kind="invalid_token",
            status_code=status_code,
        )
    if status_code == 403:
        return CopilotTokenError(
            "You do not have access to GitHub Copilot. Please ensure you have an active subscription.",
            kind="no_subscription",
            status_code=status_code,
        )
    if status_code == 404:
        return CopilotTokenError(
            "GitHub Copilot is not enabled for your account. Please check your subscription.",
            kind="not_enabled",
            status_code=status_code,
        )

    message = f"HTTP {status_code}: {text[:100]}"
    trimmed = text.strip()
    if trimmed.startswith("{"):
        try:
            payload = json.loads(trimmed)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict):
            detail = payload.get("message") or payload.get("error")
            if isinstance(detail, str) and detail:
                message = detail
    return CopilotTokenError(mask_sensitive_text(message), kind="http_error", status_code=status_code)
