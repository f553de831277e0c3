from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Protocol

import keyring
from keyring.errors import PasswordDeleteError

DEFAULT_KEYRING_SERVICE = "ref-assist"


class SecretStore(Protocol):
    def get(self, realm: str) -> str | None: ...

    def set(self, realm: str, value: str) -> None: ...

    def delete(self, realm: str) -> bool: ...


class KeyringSecretStore:
    """OS credential store backend; one keyring entry per realm."""

    def __init__(self, service_name: str = DEFAULT_KEYRING_SERVICE) -> None:
        self.service_name = service_name

    def get(self, realm: str) -> str | None:
        return keyring.get_password(self.service_name, realm)

    def set(self, realm: str, value: str) -> None:
        keyring.set_password(self.service_name, realm, value)

    def delete(self, realm: str) -> bool:
        try:
            keyring.delete_password(self.service_name, realm)
        except PasswordDeleteError:
            return False
        return True


class FileSecretStore:
    """File-backed secret store with owner-only permissions and local-only defaults."""

    def __init__(
        self,
        path: str | None = None,
        *,
        workspace_root: str | None = None,
        allow_workspace_path: bool = False,
    ) -> None:
        self.path = Path(path).expanduser().resolve() if path else default_secret_path()
        if not (allow_workspace_path or os.getenv("REF_ASSIST_ALLOW_WORKSPACE_SECRET_PATH") == "1"):
            _reject_workspace_path(self.path, workspace_root)
        self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        _chmod_private(self.path.parent, 0o700)
        if self.path.exists():
            _chmod_private(self.path, 0o600)

    def _read_all(self) -> dict[str, str]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        if not raw.strip():
            return {}
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError(f"secret store file is not a JSON object: {self.path}")
        return {str(key): str(value) for key, value in data.items()}

    def _write_all(self, payload: dict[str, str]) -> None:
        # Atomic replace.
        staging = self.path.with_name(f".{self.path.name}.tmp")
        staging.write_text(json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True), encoding="utf-8")
        _chmod_private(staging, 0o600)
        os.replace(staging, self.path)

    def get(self, realm: str) -> str | None:
        return self._read_all().get(realm)

    def set(self, realm: str, value: str) -> None:
        all_data = self._read_all()
        all_data[realm] = value
        self._write_all(all_data)

    def delete(self, realm: str) -> bool:
        all_data = self._read_all()
        if realm not in all_data:
            return False
        del all_data[realm]
        self._write_all(all_data)
        return True

    def realms(self) -> list[str]:
        return sorted(self._read_all())


class MemorySecretStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, realm: str) -> str | None:
        return self._data.get(realm)

    def set(self, realm: str, value: str) -> None:
        self._data[realm] = value

    def delete(self, realm: str) -> bool:
        return self._data.pop(realm, None) is not None

    def realms(self) -> list[str]:
        return sorted(self._data)


def build_secret_store(backend: str, *, path: str | None = None) -> SecretStore:
    if backend == "keyring":
        return KeyringSecretStore()
    if backend == "file":
        return FileSecretStore(path)
    if backend == "memory":
        return MemorySecretStore()
    raise ValueError(f"unsupported secret backend: {backend}")


def default_secret_path() -> Path:
    explicit = os.getenv("REF_ASSIST_SECRET_PATH")
    if explicit:
        return Path(explicit).expanduser().resolve()
    return (_real_user_home() / ".config" / "ref_assist" / "credentials.json").resolve()


def _reject_workspace_path(path: Path, workspace_root: str | None) -> None:
    workspace = Path(workspace_root or os.getenv("REF_ASSIST_WORKSPACE_ROOT") or os.getcwd())
    workspace = workspace.expanduser().resolve()
    if path.is_relative_to(workspace):
        raise ValueError(f"secret store path must be outside workspace: {path} (workspace: {workspace})")


def _real_user_home() -> Path:
    if os.name != "nt":
        try:
            import pwd
        except ImportError:
            pass
        else:
            try:
                return Path(pwd.getpwuid(os.getuid()).pw_dir)
            except KeyError:
                pass
    return Path.home()


def _chmod_private(path: Path, mode: int) -> None:
    try:
        path.chmod(mode)
    except OSError:
        pass
