from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .security import mask_payload


@dataclass
class HookEvent:
    at: datetime
    kind: str
    name: str
    payload: dict[str, Any] = field(default_factory=dict)


class EventLogger:
    """In-process event recorder shared by the auth, catalog and chat components."""

    def __init__(self, *, max_events: int = 1000) -> None:
        self.max_events = max(1, max_events)
        self._events: list[HookEvent] = []

    def record(self, kind: str, name: str, payload: dict[str, Any] | None = None) -> None:
        self._events.append(
            HookEvent(
                at=datetime.now(timezone.utc),
                kind=kind,
                name=name,
                payload=mask_payload(payload or {}),
            )
        )
        if len(self._events) > self.max_events:
            del self._events[: len(self._events) - self.max_events]

    def on_auth_step(self, step: str, **payload: Any) -> None:
        self.record("auth", step, payload)

    def on_vault_op(self, realm: str, op: str, ok: bool, error: str | None = None) -> None:
        payload: dict[str, Any] = {"realm": realm, "ok": ok}
        if error:
            payload["error"] = error
        self.record("vault", op, payload)

    def on_catalog(self, phase: str, **payload: Any) -> None:
        self.record("catalog", phase, payload)

    def on_chat_call(self, provider: str, model: str, phase: str, **payload: Any) -> None:
        self.record("chat", phase, {"provider": provider, "model": model, **payload})

    def list_events(self, kind: str | None = None) -> list[HookEvent]:
        if kind is None:
            return list(self._events)
        return [event for event in self._events if event.kind == kind]
