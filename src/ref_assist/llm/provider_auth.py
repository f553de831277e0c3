from __future__ import annotations

EDITOR_VERSION = "vscode/1.96.0"
EDITOR_PLUGIN_VERSION = "copilot-chat/0.24.0"
COPILOT_USER_AGENT = "GitHubCopilotChat/0.24.0"
COPILOT_INTEGRATION_ID = "vscode-chat"


def build_github_headers(access_token: str | None = None) -> dict[str, str]:
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
    }
    if access_token is not None:
        headers["Authorization"] = f"Bearer {_require_token(access_token, 'GitHub')}"
    return headers


def build_copilot_token_headers(access_token: str) -> dict[str, str]:
    return {
        "Authorization": f"Bearer {_require_token(access_token, 'GitHub')}",
        "Accept": "application/json",
        "Editor-Version": EDITOR_VERSION,
        "Editor-Plugin-Version": EDITOR_PLUGIN_VERSION,
        "User-Agent": COPILOT_USER_AGENT,
    }


def build_copilot_headers(
    session_token: str,
    *,
    stream: bool = False,
    vision: bool = False,
    content_type: bool = True,
) -> dict[str, str]:
    headers = {
        "Authorization": f"Bearer {_require_token(session_token, 'Copilot session')}",
        "Editor-Version": EDITOR_VERSION,
        "Copilot-Integration-Id": COPILOT_INTEGRATION_ID,
        "Accept": "text/event-stream" if stream else "application/json",
    }
    if content_type:
        headers["Content-Type"] = "application/json"
    if vision:
        headers["Copilot-Vision-Request"] = "true"
    return headers


def _require_token(token: str, label: str) -> str:
    key = token.strip()
    if not key:
        raise ValueError(f"{label} token is empty")
    return key
