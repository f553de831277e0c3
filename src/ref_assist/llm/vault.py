from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

from ref_assist.hooks.observability import EventLogger

from .models import CredentialRecord
from .secret_store import SecretStore

GITHUB_TOKEN_REALM = "GitHub Copilot OAuth Token"
COPILOT_SESSION_REALM = "GitHub Copilot Session Token"
COPILOT_REALMS = (GITHUB_TOKEN_REALM, COPILOT_SESSION_REALM)


class CredentialVault:
    """
    Realm-keyed credential records on top of a SecretStore.

    Storage faults never escape: writes and deletes report False, reads report None.
    """

    def __init__(self, store: SecretStore, *, logger: EventLogger | None = None) -> None:
        self.store_backend = store
        self.logger = logger or EventLogger()

    def store(self, realm: str, secret: str, metadata: dict[str, Any] | None = None) -> bool:
        self.delete(realm)
        record = CredentialRecord(realm=realm, secret=secret, metadata=dict(metadata or {}))
        try:
            self.store_backend.set(realm, record.model_dump_json())
        except Exception as exc:
            self.logger.on_vault_op(realm, "store", False, error=str(exc))
            return False
        self.logger.on_vault_op(realm, "store", True)
        return True

    def load(self, realm: str) -> CredentialRecord | None:
        try:
            raw = self.store_backend.get(realm)
            if raw is None:
                return None
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                raise ValueError("credential record is not a JSON object")
            payload["realm"] = realm
            return CredentialRecord.model_validate(payload)
        except Exception as exc:
            self.logger.on_vault_op(realm, "load", False, error=str(exc))
            return None

    def delete(self, realm: str) -> bool:
        try:
            self.store_backend.delete(realm)
        except Exception as exc:
            self.logger.on_vault_op(realm, "delete", False, error=str(exc))
            return False
        self.logger.on_vault_op(realm, "delete", True)
        return True

    def is_valid(self, realm: str, max_age: timedelta | None = None) -> bool:
        record = self.load(realm)
        if record is None:
            return False
        now = datetime.now(timezone.utc)
        if max_age is not None and now - _as_utc(record.stored_at) > max_age:
            return False
        expires_at = metadata_datetime(record.metadata, "expires_at")
        if expires_at is not None and now > expires_at:
            return False
        return True

    def clear(self, realms: Iterable[str] = COPILOT_REALMS) -> bool:
        results = [self.delete(realm) for realm in realms]
        return all(results)


def metadata_datetime(metadata: dict[str, Any], key: str) -> datetime | None:
    value = metadata.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
        # Values beyond year ~5000 in seconds are epoch milliseconds.
        if seconds > 1e11:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        candidate = value.strip()
        if candidate.endswith("Z"):
            candidate = candidate[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            return None
        return _as_utc(parsed)
    return None


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
