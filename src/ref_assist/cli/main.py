from __future__ import annotations

import argparse
import asyncio
import mimetypes
import sys
import webbrowser
from pathlib import Path

from ref_assist.llm import model_registry
from ref_assist.llm.errors import AssistantError, RequestCancelledError
from ref_assist.llm.messages import encode_image_data_url
from ref_assist.llm.models import ChatMessage, ProviderKind
from ref_assist.llm.service import ChatService, build_chat_service
from ref_assist.settings import load_config


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ref-assist",
        description="Connect to GitHub Copilot or a local model server and run chat completions.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    login = commands.add_parser("login", help="Run the GitHub device login and store credentials.")
    login.add_argument(
        "--no-browser",
        action="store_true",
        help="Do not auto-open the verification page. Print the URL only.",
    )
    commands.add_parser("logout", help="Delete stored GitHub and Copilot credentials.")
    commands.add_parser("status", help="Show the connected GitHub account and session validity.")

    models = commands.add_parser("models", help="List models currently served by Copilot.")
    models.add_argument("--refresh", action="store_true", help="Ignore the cached catalog.")

    chat = commands.add_parser("chat", help="Send one prompt and print the reply.")
    chat.add_argument("prompt")
    chat.add_argument("--model", default=None, help="Model id override.")
    chat.add_argument(
        "--provider",
        default=None,
        choices=[provider.value for provider in ProviderKind],
        help="Provider override (default from REF_ASSIST_DEFAULT_PROVIDER).",
    )
    chat.add_argument("--task", default=None, help="Task id used to pick a task-specific model.")
    chat.add_argument("--system", default=None, help="Optional system prompt.")
    chat.add_argument(
        "--image",
        action="append",
        default=[],
        help="Attach an image file to the prompt (repeatable).",
    )
    chat.add_argument("--no-stream", action="store_true", help="Wait for the full reply.")

    local_status = commands.add_parser("local-status", help="Probe a local model server.")
    local_status.add_argument(
        "provider",
        choices=[provider.value for provider in ProviderKind if provider.is_local],
    )
    return parser


def _image_data_url(path: str) -> str:
    image_path = Path(path).expanduser()
    mime_type = mimetypes.guess_type(image_path.name)[0] or "image/png"
    return encode_image_data_url(image_path.read_bytes(), mime_type)


async def _login(service: ChatService, *, open_browser: bool) -> int:
    def _show_code(user_code: str, verification_uri: str) -> None:
        print(f"Open {verification_uri} and enter code: {user_code}")
        if open_browser and not webbrowser.open(verification_uri):
            print("Browser could not be opened automatically. Open URL manually.")

    def _status(status: str) -> None:
        if status == "waiting":
            print("Waiting for approval...")
        elif status == "success":
            print("Approved. Exchanging for a Copilot session token.")

    result = await service.auth.authenticate(on_show_code=_show_code, on_status=_status)
    login = result.user.login if result.user and result.user.login else "unknown user"
    print(f"Login complete: connected as {login}")
    return 0


async def _status(service: ChatService) -> int:
    user = service.auth.stored_user()
    valid = await service.auth.has_valid_session()
    if user is None and not valid:
        print("Not connected. Run `ref-assist login`.")
        return 1
    login = user.login if user and user.login else "unknown user"
    state = "valid" if valid else "expired (run `ref-assist login`)"
    print(f"GitHub account: {login}")
    print(f"Copilot session: {state}")
    return 0


async def _models(service: ChatService, *, refresh: bool) -> int:
    if refresh:
        service.catalog.invalidate()
    for model_id in await service.catalog.get_available_models():
        info = model_registry.get_model(model_id)
        if info is None:
            print(model_id)
        else:
            vendor = model_registry.vendor_display_name(info.vendor)
            print(f"{model_id}\t{info.name} ({vendor}, x{info.premium:g})")
    return 0


async def _chat(service: ChatService, args: argparse.Namespace) -> int:
    messages: list[ChatMessage] = []
    if args.system:
        messages.append(ChatMessage(role="system", text=args.system))
    images = tuple(_image_data_url(path) for path in args.image)
    messages.append(ChatMessage(role="user", text=args.prompt, images=images))

    stream = not args.no_stream

    def _print_chunk(delta: str, accumulated: str) -> None:
        del accumulated
        sys.stdout.write(delta)
        sys.stdout.flush()

    result = await service.send(
        messages,
        task=args.task,
        provider=args.provider,
        model=args.model,
        stream=stream,
        on_chunk=_print_chunk if stream else None,
    )
    if stream:
        sys.stdout.write("\n")
    else:
        print(result.content)
    print(f"[model: {result.model}]", file=sys.stderr)
    return 0


async def _local_status(service: ChatService, provider: str) -> int:
    status = await service.local.check_connection(provider)
    if not status.connected:
        print(f"{provider}: not connected ({status.error})")
        return 1
    print(f"{provider}: connected, {len(status.models)} model(s)")
    for model in status.models:
        print(f"  {model.name}")
    return 0


async def _dispatch(service: ChatService, args: argparse.Namespace) -> int:
    if args.command == "login":
        return await _login(service, open_browser=not args.no_browser)
    if args.command == "logout":
        service.auth.disconnect()
        print("Disconnected from GitHub Copilot.")
        return 0
    if args.command == "status":
        return await _status(service)
    if args.command == "models":
        return await _models(service, refresh=args.refresh)
    if args.command == "chat":
        return await _chat(service, args)
    if args.command == "local-status":
        return await _local_status(service, args.provider)
    raise ValueError(f"unsupported command: {args.command}")


def run(argv: list[str] | None = None, *, service: ChatService | None = None) -> int:
    args = _build_parser().parse_args(argv)
    chat_service = service or build_chat_service(load_config())
    try:
        return asyncio.run(_dispatch(chat_service, args))
    except (AssistantError, RequestCancelledError, ValueError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


def main() -> None:
    raise SystemExit(run())


if __name__ == "__main__":
    main()
