import json
import os
import stat
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from keyring.errors import PasswordDeleteError

import ref_assist.llm.secret_store as secret_store
from ref_assist.hooks import EventLogger
from ref_assist.llm.secret_store import (
    FileSecretStore,
    KeyringSecretStore,
    MemorySecretStore,
    build_secret_store,
)
from ref_assist.llm.vault import (
    COPILOT_SESSION_REALM,
    GITHUB_TOKEN_REALM,
    CredentialVault,
    metadata_datetime,
)


class RecordingStore(MemorySecretStore):
    def __init__(self) -> None:
        super().__init__()
        self.ops: list[tuple[str, str]] = []

    def set(self, realm: str, value: str) -> None:
        self.ops.append(("set", realm))
        super().set(realm, value)

    def delete(self, realm: str) -> bool:
        self.ops.append(("delete", realm))
        return super().delete(realm)


class BrokenStore:
    def get(self, realm: str) -> str | None:
        raise RuntimeError("secure storage locked")

    def set(self, realm: str, value: str) -> None:
        raise RuntimeError("secure storage locked")

    def delete(self, realm: str) -> bool:
        raise RuntimeError("secure storage locked")


def test_store_deletes_existing_record_before_writing() -> None:
    store = RecordingStore()
    vault = CredentialVault(store)

    assert vault.store(GITHUB_TOKEN_REALM, "gho_first", {"user": {"login": "octocat"}})
    assert vault.store(GITHUB_TOKEN_REALM, "gho_second")

    assert store.ops == [
        ("delete", GITHUB_TOKEN_REALM),
        ("set", GITHUB_TOKEN_REALM),
        ("delete", GITHUB_TOKEN_REALM),
        ("set", GITHUB_TOKEN_REALM),
    ]
    assert store.realms() == [GITHUB_TOKEN_REALM]
    record = vault.load(GITHUB_TOKEN_REALM)
    assert record is not None
    assert record.secret == "gho_second"
    assert record.metadata == {}


def test_load_round_trips_metadata_and_realm() -> None:
    vault = CredentialVault(MemorySecretStore())
    vault.store(COPILOT_SESSION_REALM, "tid=abc", {"expires_at": 1_900_000_000})

    record = vault.load(COPILOT_SESSION_REALM)

    assert record is not None
    assert record.realm == COPILOT_SESSION_REALM
    assert record.metadata["expires_at"] == 1_900_000_000
    assert record.stored_at.tzinfo is not None
    assert vault.load("missing") is None


def test_is_valid_checks_presence_age_and_expiry() -> None:
    store = MemorySecretStore()
    vault = CredentialVault(store)
    now = datetime.now(timezone.utc)

    assert vault.is_valid(GITHUB_TOKEN_REALM) is False

    store.set(
        "old",
        json.dumps({"secret": "s", "metadata": {}, "stored_at": (now - timedelta(days=2)).isoformat()}),
    )
    assert vault.is_valid("old") is True
    assert vault.is_valid("old", max_age=timedelta(days=1)) is False

    vault.store("expired-seconds", "s", {"expires_at": (now - timedelta(minutes=1)).timestamp()})
    vault.store("expired-ms", "s", {"expires_at": (now - timedelta(minutes=1)).timestamp() * 1000})
    vault.store("expired-iso", "s", {"expires_at": (now - timedelta(minutes=1)).isoformat()})
    vault.store("fresh", "s", {"expires_at": (now + timedelta(hours=1)).timestamp()})

    assert vault.is_valid("expired-seconds") is False
    assert vault.is_valid("expired-ms") is False
    assert vault.is_valid("expired-iso") is False
    assert vault.is_valid("fresh") is True


def test_backend_faults_degrade_to_false_and_none() -> None:
    logger = EventLogger()
    vault = CredentialVault(BrokenStore(), logger=logger)

    assert vault.store(GITHUB_TOKEN_REALM, "gho_secret") is False
    assert vault.load(GITHUB_TOKEN_REALM) is None
    assert vault.delete(GITHUB_TOKEN_REALM) is False
    assert vault.is_valid(GITHUB_TOKEN_REALM) is False
    assert vault.clear() is False

    events = logger.list_events("vault")
    assert events
    assert all(event.payload["ok"] is False for event in events)
    assert events[0].payload["error"] == "secure storage locked"


def test_corrupt_record_loads_as_absent() -> None:
    store = MemorySecretStore({GITHUB_TOKEN_REALM: "not json"})
    vault = CredentialVault(store)

    assert vault.load(GITHUB_TOKEN_REALM) is None


def test_clear_removes_both_copilot_realms() -> None:
    store = MemorySecretStore()
    vault = CredentialVault(store)
    vault.store(GITHUB_TOKEN_REALM, "gho_x")
    vault.store(COPILOT_SESSION_REALM, "tid=y")
    vault.store("unrelated", "z")

    vault.clear()

    assert store.realms() == ["unrelated"]


def test_metadata_datetime_formats() -> None:
    expected = datetime(2030, 1, 1, tzinfo=timezone.utc)

    assert metadata_datetime({"at": expected.timestamp()}, "at") == expected
    assert metadata_datetime({"at": expected.timestamp() * 1000}, "at") == expected
    assert metadata_datetime({"at": "2030-01-01T00:00:00Z"}, "at") == expected
    assert metadata_datetime({"at": "garbage"}, "at") is None
    assert metadata_datetime({"at": True}, "at") is None
    assert metadata_datetime({}, "at") is None


def test_file_store_rejects_workspace_path(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        FileSecretStore(str(tmp_path / "credentials.json"), workspace_root=str(tmp_path))


def test_file_store_writes_private_permissions(tmp_path: Path) -> None:
    if os.name == "nt":
        pytest.skip("permission bits assertion is posix-only")

    store = FileSecretStore(
        str(tmp_path / "secure" / "credentials.json"),
        workspace_root=str(tmp_path),
        allow_workspace_path=True,
    )
    vault = CredentialVault(store)
    vault.store(GITHUB_TOKEN_REALM, "gho_abc")

    file_mode = stat.S_IMODE(store.path.stat().st_mode)
    dir_mode = stat.S_IMODE(store.path.parent.stat().st_mode)
    assert file_mode == 0o600
    assert dir_mode == 0o700
    assert store.realms() == [GITHUB_TOKEN_REALM]
    assert vault.load(GITHUB_TOKEN_REALM).secret == "gho_abc"
    assert store.delete(GITHUB_TOKEN_REALM) is True
    assert store.delete(GITHUB_TOKEN_REALM) is False


def test_keyring_store_uses_service_name(monkeypatch: pytest.MonkeyPatch) -> None:
    saved: dict[tuple[str, str], str] = {}

    def _set(service: str, realm: str, value: str) -> None:
        saved[(service, realm)] = value

    def _get(service: str, realm: str) -> str | None:
        return saved.get((service, realm))

    def _delete(service: str, realm: str) -> None:
        if (service, realm) not in saved:
            raise PasswordDeleteError("not found")
        del saved[(service, realm)]

    monkeypatch.setattr(secret_store.keyring, "set_password", _set)
    monkeypatch.setattr(secret_store.keyring, "get_password", _get)
    monkeypatch.setattr(secret_store.keyring, "delete_password", _delete)

    store = KeyringSecretStore()
    vault = CredentialVault(store)
    assert vault.store(COPILOT_SESSION_REALM, "tid=abc")
    assert ("ref-assist", COPILOT_SESSION_REALM) in saved
    assert vault.load(COPILOT_SESSION_REALM).secret == "tid=abc"
    assert store.delete(COPILOT_SESSION_REALM) is True
    assert store.delete(COPILOT_SESSION_REALM) is False


def test_build_secret_store_backends(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REF_ASSIST_WORKSPACE_ROOT", str(tmp_path / "workspace"))

    assert isinstance(build_secret_store("memory"), MemorySecretStore)
    assert isinstance(build_secret_store("keyring"), KeyringSecretStore)
    file_store = build_secret_store("file", path=str(tmp_path / "home" / "credentials.json"))
    assert isinstance(file_store, FileSecretStore)
    with pytest.raises(ValueError):
        build_secret_store("plaintext")
