import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

import ref_assist.llm.device_flow as device_flow
from ref_assist.hooks import EventLogger
from ref_assist.llm.device_flow import DeviceFlowClient
from ref_assist.llm.errors import (
    AccessDeniedError,
    AuthenticationInProgressError,
    CopilotTokenError,
    DeviceCodeExpiredError,
    DeviceFlowCancelledError,
    DeviceFlowError,
    ProtocolError,
    ProviderUnavailableError,
    ReauthenticationRequiredError,
)
from ref_assist.llm.models import DeviceFlowState
from ref_assist.llm.secret_store import MemorySecretStore
from ref_assist.llm.vault import COPILOT_SESSION_REALM, GITHUB_TOKEN_REALM, CredentialVault

_REAL_PAUSE = device_flow._pause


def _device_code_payload(device_code: str = "dev-1", interval: int = 5) -> dict:
    return {
        "device_code": device_code,
        "user_code": "ABCD-1234",
        "verification_uri": "https://github.com/login/device",
        "expires_in": 900,
        "interval": interval,
    }


def _copilot_token_payload(minutes: int = 30) -> dict:
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return {"token": "tid=fresh;exp=1", "expires_at": int(expires_at.timestamp()), "refresh_in": 1500}


class FakeGitHub:
    def __init__(self, token_responses: list[dict] | None = None) -> None:
        self.token_responses = list(token_responses or [])
        self.device_codes_issued = 0
        self.calls: list[str] = []
        self.token_requests: list[dict] = []
        self.copilot_response = httpx.Response(200, json=_copilot_token_payload())
        self.user_response = httpx.Response(200, json={"id": 1, "login": "octocat", "name": "Mona"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append(path)
        if path == "/login/device/code":
            self.device_codes_issued += 1
            return httpx.Response(200, json=_device_code_payload(f"dev-{self.device_codes_issued}"))
        if path == "/login/oauth/access_token":
            body = json.loads(request.content)
            self.token_requests.append(body)
            return httpx.Response(200, json=self.token_responses.pop(0))
        if path == "/copilot_internal/v2/token":
            return self.copilot_response
        if path == "/user":
            return self.user_response
        return httpx.Response(404)

    def count(self, path: str) -> int:
        return self.calls.count(path)


def _build(github: FakeGitHub, store: MemorySecretStore | None = None) -> DeviceFlowClient:
    vault = CredentialVault(store or MemorySecretStore(), logger=EventLogger())
    return DeviceFlowClient(vault, transport=httpx.MockTransport(github.handler))


def _no_wait(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    intervals: list[float] = []

    async def _fake_pause(seconds: float, wake_events: tuple[asyncio.Event, ...]) -> None:
        intervals.append(seconds)

    monkeypatch.setattr(device_flow, "_pause", _fake_pause)
    return intervals


def _wait_until_woken(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _blocking_pause(seconds: float, wake_events: tuple[asyncio.Event, ...]) -> None:
        await _REAL_PAUSE(None, wake_events)

    monkeypatch.setattr(device_flow, "_pause", _blocking_pause)


def test_start_device_flow_returns_user_code() -> None:
    github = FakeGitHub()
    client = _build(github)

    code = asyncio.run(client.start_device_flow())

    assert code.user_code == "ABCD-1234"
    assert code.verification_uri == "https://github.com/login/device"
    assert code.expires_in == 900
    assert client.state == DeviceFlowState.CODE_REQUESTED
    assert client.active_session is not None
    assert client.active_session.poll_interval_seconds == 5


def test_start_device_flow_enforces_minimum_interval() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_device_code_payload(interval=1))

    vault = CredentialVault(MemorySecretStore())
    client = DeviceFlowClient(vault, transport=httpx.MockTransport(handler))
    asyncio.run(client.start_device_flow())

    assert client.active_session.poll_interval_seconds == 5


def test_start_device_flow_error_mapping() -> None:
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="unavailable")

    def oauth_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"error": "unauthorized_client", "error_description": "bad client"})

    def missing_fields(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"user_code": "ABCD-1234"})

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    vault = CredentialVault(MemorySecretStore())
    with pytest.raises(ProviderUnavailableError):
        asyncio.run(DeviceFlowClient(vault, transport=httpx.MockTransport(server_error)).start_device_flow())
    with pytest.raises(ProviderUnavailableError):
        asyncio.run(DeviceFlowClient(vault, transport=httpx.MockTransport(refused)).start_device_flow())
    with pytest.raises(ProtocolError, match="bad client"):
        asyncio.run(DeviceFlowClient(vault, transport=httpx.MockTransport(oauth_error)).start_device_flow())
    with pytest.raises(ProtocolError):
        asyncio.run(DeviceFlowClient(vault, transport=httpx.MockTransport(missing_fields)).start_device_flow())


def test_poll_reports_waiting_until_token_granted(monkeypatch: pytest.MonkeyPatch) -> None:
    intervals = _no_wait(monkeypatch)
    pending = {"error": "authorization_pending"}
    github = FakeGitHub([pending, pending, pending, {"access_token": "gho_granted", "token_type": "bearer"}])
    client = _build(github)
    statuses: list[str] = []

    async def run() -> str:
        await client.start_device_flow()
        return await client.poll_for_token(statuses.append)

    token = asyncio.run(run())

    assert token == "gho_granted"
    assert statuses == ["waiting", "waiting", "waiting", "success"]
    assert intervals == [5, 5, 5]
    assert github.token_requests[0]["device_code"] == "dev-1"
    assert github.token_requests[0]["grant_type"] == device_flow.DEVICE_CODE_GRANT_TYPE
    assert client.state == DeviceFlowState.EXCHANGING
    assert client.active_session is None


def test_poll_without_active_flow_raises() -> None:
    client = _build(FakeGitHub())

    with pytest.raises(DeviceFlowError):
        asyncio.run(client.poll_for_token())


def test_expired_device_code_stops_before_any_request(monkeypatch: pytest.MonkeyPatch) -> None:
    github = FakeGitHub([{"access_token": "gho_never"}])
    client = _build(github)

    async def run() -> str:
        await client.start_device_flow()
        later = datetime.now(timezone.utc) + timedelta(seconds=901)
        monkeypatch.setattr(device_flow, "_utcnow", lambda: later)
        return await client.poll_for_token()

    with pytest.raises(DeviceCodeExpiredError):
        asyncio.run(run())

    assert github.count("/login/oauth/access_token") == 0
    assert client.state == DeviceFlowState.EXPIRED


def test_slow_down_increases_interval_for_rest_of_session(monkeypatch: pytest.MonkeyPatch) -> None:
    intervals = _no_wait(monkeypatch)
    github = FakeGitHub(
        [
            {"error": "slow_down"},
            {"error": "authorization_pending"},
            {"error": "slow_down"},
            {"access_token": "gho_slow"},
        ]
    )
    client = _build(github)

    async def run() -> str:
        await client.start_device_flow()
        return await client.poll_for_token()

    assert asyncio.run(run()) == "gho_slow"
    assert intervals == [10, 10, 15]


@pytest.mark.parametrize(
    ("error", "expected", "state"),
    [
        ("expired_token", DeviceCodeExpiredError, DeviceFlowState.EXPIRED),
        ("access_denied", AccessDeniedError, DeviceFlowState.FAILED),
        ("incorrect_device_code", ProtocolError, DeviceFlowState.FAILED),
    ],
)
def test_terminal_poll_errors(
    monkeypatch: pytest.MonkeyPatch,
    error: str,
    expected: type[Exception],
    state: DeviceFlowState,
) -> None:
    _no_wait(monkeypatch)
    client = _build(FakeGitHub([{"error": error}]))

    async def run() -> str:
        await client.start_device_flow()
        return await client.poll_for_token()

    with pytest.raises(expected):
        asyncio.run(run())
    assert client.state == state


def test_grant_without_access_token_is_protocol_error(monkeypatch: pytest.MonkeyPatch) -> None:
    _no_wait(monkeypatch)
    client = _build(FakeGitHub([{"token_type": "bearer"}]))

    async def run() -> str:
        await client.start_device_flow()
        return await client.poll_for_token()

    with pytest.raises(ProtocolError):
        asyncio.run(run())


def test_new_flow_cancels_previous_poll(monkeypatch: pytest.MonkeyPatch) -> None:
    _wait_until_woken(monkeypatch)

    class TwoFlows(FakeGitHub):
        def handler(self, request: httpx.Request) -> httpx.Response:
            if request.url.path == "/login/oauth/access_token":
                body = json.loads(request.content)
                self.token_requests.append(body)
                if body["device_code"] == "dev-1":
                    return httpx.Response(200, json={"error": "authorization_pending"})
                return httpx.Response(200, json={"access_token": "gho_second"})
            return super().handler(request)

    github = TwoFlows()
    client = _build(github)
    first_statuses: list[str] = []
    second_statuses: list[str] = []

    async def run() -> str:
        await client.start_device_flow()
        first = asyncio.create_task(client.poll_for_token(first_statuses.append))
        while not first_statuses:
            await asyncio.sleep(0)

        await client.start_device_flow()
        token = await client.poll_for_token(second_statuses.append)
        with pytest.raises(DeviceFlowCancelledError):
            await first
        return token

    assert asyncio.run(run()) == "gho_second"
    assert first_statuses == ["waiting"]
    assert second_statuses == ["success"]
    assert [body["device_code"] for body in github.token_requests] == ["dev-1", "dev-2"]


def test_cancel_flow_stops_polling(monkeypatch: pytest.MonkeyPatch) -> None:
    _wait_until_woken(monkeypatch)
    github = FakeGitHub([{"error": "authorization_pending"}])
    client = _build(github)
    statuses: list[str] = []

    async def run() -> None:
        await client.start_device_flow()
        task = asyncio.create_task(client.poll_for_token(statuses.append))
        while not statuses:
            await asyncio.sleep(0)
        client.cancel_flow()
        await task

    with pytest.raises(DeviceFlowCancelledError):
        asyncio.run(run())

    assert statuses == ["waiting"]
    assert client.state == DeviceFlowState.IDLE
    assert client.active_session is None
    assert github.count("/login/oauth/access_token") == 1


def test_external_signal_cancels_poll(monkeypatch: pytest.MonkeyPatch) -> None:
    _wait_until_woken(monkeypatch)
    client = _build(FakeGitHub([{"error": "authorization_pending"}]))
    statuses: list[str] = []

    async def run() -> None:
        signal = asyncio.Event()
        await client.start_device_flow()
        task = asyncio.create_task(client.poll_for_token(statuses.append, signal=signal))
        while not statuses:
            await asyncio.sleep(0)
        signal.set()
        await task

    with pytest.raises(DeviceFlowCancelledError):
        asyncio.run(run())
    assert client.state == DeviceFlowState.IDLE


@pytest.mark.parametrize(
    ("status", "kind"),
    [(401, "invalid_token"), (403, "no_subscription"), (404, "not_enabled")],
)
def test_copilot_token_error_kinds(status: int, kind: str) -> None:
    github = FakeGitHub()
    github.copilot_response = httpx.Response(status, text="denied")
    client = _build(github)

    with pytest.raises(CopilotTokenError) as exc_info:
        asyncio.run(client.get_copilot_token("gho_abc"))

    assert exc_info.value.kind == kind
    assert exc_info.value.status_code == status


def test_copilot_token_other_errors_use_body_message() -> None:
    github = FakeGitHub()
    github.copilot_response = httpx.Response(500, json={"message": "upstream exploded"})
    client = _build(github)

    with pytest.raises(CopilotTokenError, match="upstream exploded") as exc_info:
        asyncio.run(client.get_copilot_token("gho_abc"))
    assert exc_info.value.kind == "http_error"

    github.copilot_response = httpx.Response(502, text="x" * 300)
    with pytest.raises(CopilotTokenError) as exc_info:
        asyncio.run(client.get_copilot_token("gho_abc"))
    assert str(exc_info.value) == "HTTP 502: " + "x" * 100


def test_copilot_token_without_token_field_is_protocol_error() -> None:
    github = FakeGitHub()
    github.copilot_response = httpx.Response(200, json={"expires_at": 1})
    client = _build(github)

    with pytest.raises(ProtocolError):
        asyncio.run(client.get_copilot_token("gho_abc"))


def test_copilot_token_request_sends_access_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_copilot_token_payload())

    client = DeviceFlowClient(CredentialVault(MemorySecretStore()), transport=httpx.MockTransport(handler))
    session = asyncio.run(client.get_copilot_token("gho_abc"))

    assert session.value == "tid=fresh;exp=1"
    assert seen[0].headers["Authorization"] == "Bearer gho_abc"
    assert seen[0].url.path == "/copilot_internal/v2/token"


def test_user_info_failure_returns_none() -> None:
    github = FakeGitHub()
    github.user_response = httpx.Response(500, text="nope")
    client = _build(github)

    assert asyncio.run(client.get_user_info("gho_abc")) is None
    assert client.logger.list_events("auth")[-1].name == "user_info_unavailable"


def test_authenticate_persists_both_realms(monkeypatch: pytest.MonkeyPatch) -> None:
    _no_wait(monkeypatch)
    store = MemorySecretStore()
    github = FakeGitHub([{"error": "authorization_pending"}, {"access_token": "gho_auth"}])
    client = _build(github, store)
    shown: list[tuple[str, str]] = []
    statuses: list[str] = []

    result = asyncio.run(
        client.authenticate(on_show_code=lambda code, uri: shown.append((code, uri)), on_status=statuses.append)
    )

    assert shown == [("ABCD-1234", "https://github.com/login/device")]
    assert statuses == ["waiting", "success"]
    assert result.access_token == "gho_auth"
    assert result.session_token.value == "tid=fresh;exp=1"
    assert result.user.login == "octocat"
    assert client.state == DeviceFlowState.AUTHENTICATED
    assert store.realms() == sorted([GITHUB_TOKEN_REALM, COPILOT_SESSION_REALM])

    session_record = client.vault.load(COPILOT_SESSION_REALM)
    assert session_record.secret == "tid=fresh;exp=1"
    assert session_record.metadata["expires_at"] == result.session_token.expires_at.timestamp()
    assert client.stored_user().login == "octocat"


def test_authenticate_fails_when_copilot_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    _no_wait(monkeypatch)
    store = MemorySecretStore()
    github = FakeGitHub([{"access_token": "gho_auth"}])
    github.copilot_response = httpx.Response(403, text="no seat")
    client = _build(github, store)

    with pytest.raises(CopilotTokenError):
        asyncio.run(client.authenticate())

    assert client.state == DeviceFlowState.FAILED
    assert store.realms() == []


def test_second_authenticate_while_running_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    _wait_until_woken(monkeypatch)
    client = _build(FakeGitHub([{"error": "authorization_pending"}]))
    statuses: list[str] = []

    async def run() -> None:
        first = asyncio.create_task(client.authenticate(on_status=statuses.append))
        while not statuses:
            await asyncio.sleep(0)
        with pytest.raises(AuthenticationInProgressError):
            await client.authenticate()
        client.cancel_flow()
        with pytest.raises(DeviceFlowCancelledError):
            await first

    asyncio.run(run())


def _seed(store: MemorySecretStore, *, session_minutes: int | None, access_token: str | None = "gho_saved") -> None:
    vault = CredentialVault(store)
    if access_token is not None:
        vault.store(GITHUB_TOKEN_REALM, access_token, {"user": {"login": "octocat"}})
    if session_minutes is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=session_minutes)
        vault.store(COPILOT_SESSION_REALM, "tid=stored", {"expires_at": expires_at.timestamp()})


def test_session_token_within_leeway_is_refreshed() -> None:
    store = MemorySecretStore()
    _seed(store, session_minutes=3)
    github = FakeGitHub()
    client = _build(github, store)

    token = asyncio.run(client.get_session_token())

    assert token == "tid=fresh;exp=1"
    assert github.count("/copilot_internal/v2/token") == 1
    assert client.vault.load(COPILOT_SESSION_REALM).secret == "tid=fresh;exp=1"


def test_session_token_outside_leeway_is_reused() -> None:
    store = MemorySecretStore()
    _seed(store, session_minutes=10)
    github = FakeGitHub()
    client = _build(github, store)

    assert asyncio.run(client.get_session_token()) == "tid=stored"
    assert github.calls == []


def test_rejected_access_token_clears_credentials() -> None:
    store = MemorySecretStore()
    _seed(store, session_minutes=-5)
    github = FakeGitHub()
    github.copilot_response = httpx.Response(401, text="bad credentials")
    client = _build(github, store)

    with pytest.raises(ReauthenticationRequiredError, match="GitHub session expired"):
        asyncio.run(client.get_session_token())

    assert store.realms() == []
    assert asyncio.run(client.has_valid_session()) is False


def test_missing_access_token_requires_login() -> None:
    store = MemorySecretStore()
    _seed(store, session_minutes=None, access_token=None)
    github = FakeGitHub()
    client = _build(github, store)

    with pytest.raises(ReauthenticationRequiredError, match="Not authenticated"):
        asyncio.run(client.get_session_token())
    assert github.calls == []


def test_subscription_error_keeps_credentials() -> None:
    store = MemorySecretStore()
    _seed(store, session_minutes=None)
    github = FakeGitHub()
    github.copilot_response = httpx.Response(403, text="no seat")
    client = _build(github, store)

    with pytest.raises(CopilotTokenError) as exc_info:
        asyncio.run(client.get_session_token())

    assert exc_info.value.kind == "no_subscription"
    assert store.realms() == [GITHUB_TOKEN_REALM]


def test_disconnect_clears_session() -> None:
    store = MemorySecretStore()
    _seed(store, session_minutes=30)
    client = _build(FakeGitHub(), store)

    assert asyncio.run(client.has_valid_session()) is True
    client.disconnect()

    assert store.realms() == []
    assert client.stored_user() is None
