"""agentbridge CLI: main application entry point."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import mimetypes
import os
import signal
import sys
import uuid
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentbridge.adapters.chunks import TERMINAL_ERROR_TYPES, chunk_to_dict
from agentbridge.engine.config import BridgeConfig
from agentbridge.engine.context import RuntimeContext
from agentbridge.engine.errors import BridgeError
from agentbridge.engine.providers.base import ChatOptions, ImageAttachment
from agentbridge.engine.providers.registry import ProviderRegistry, build_provider_registry
from agentbridge.engine.yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

LOG_FILE_NAME = "agentbridge.log"


def setup_logging(config: BridgeConfig, verbose: bool = False) -> Path:
    """Root logger: rotating file under the data dir plus stderr.

    stdout is reserved for chunk output.
    """
    level = "DEBUG" if verbose else config.log_level.upper()
    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / LOG_FILE_NAME

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    stream_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def load_context(config_path: str | None) -> RuntimeContext:
    config_path = config_path or os.getenv("AGENTBRIDGE_CONFIG")
    if config_path:
        settings = load_yaml_config(config_path)
        return RuntimeContext(settings.bridge, providers=settings.providers).init()
    return RuntimeContext(BridgeConfig.from_env()).init()


def load_image(path: str) -> ImageAttachment:
    media_type = mimetypes.guess_type(path)[0] or "image/png"
    data = base64.b64encode(Path(path).read_bytes()).decode("ascii")
    return ImageAttachment(media_type=media_type, base64_data=data, filename=Path(path).name)


def _emit(data: dict) -> None:
    sys.stdout.write(json.dumps(data, ensure_ascii=False) + "\n")
    sys.stdout.flush()


async def run_chat(registry: ProviderRegistry, args) -> int:
    provider = registry.get_or_raise(args.provider) if args.provider else registry.get_default()
    prompt = sys.stdin.read() if args.prompt == "-" else args.prompt
    options = ChatOptions(
        sub_chat_id=args.sub_chat_id or uuid.uuid4().hex,
        prompt=prompt,
        cwd=str(Path(args.cwd).resolve()),
        mode="plan" if args.plan else "agent",
        session_id=args.session_id,
        model=args.model,
        images=[load_image(p) for p in args.image],
        emitted_diff_keys=list(args.diff_key),
        reasoning_effort=args.reasoning_effort,
    )
    logger.info(
        "chat: provider=%s sub_chat=%s cwd=%s resume=%s",
        provider.name, options.sub_chat_id, options.cwd, options.session_id or "-",
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, provider.cancel, options.sub_chat_id)
    except (NotImplementedError, RuntimeError):
        logger.debug("signal handlers not supported on this platform")

    failed = False
    try:
        async for chunk in provider.chat(options):
            if chunk.type in TERMINAL_ERROR_TYPES:
                failed = True
            _emit(chunk_to_dict(chunk))
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
    return 1 if failed else 0


async def run_status(registry: ProviderRegistry) -> int:
    statuses = await registry.get_all_status()
    _emit({
        "default": registry.default_name,
        "providers": {name: status.to_dict() for name, status in statuses.items()},
    })
    return 0


async def run_models(registry: ProviderRegistry, context: RuntimeContext, refresh: bool) -> int:
    from agentbridge.engine.providers.opencode_provider import OpenCodeProvider

    provider = next(
        (registry.get(n) for n in registry.list_names() if isinstance(registry.get(n), OpenCodeProvider)),
        None,
    )
    if provider is None:
        provider = OpenCodeProvider(context)
    for model in await provider.list_models(force_refresh=refresh):
        _emit({"id": model.id, "name": model.name, "displayName": model.display_name})
    return 0


async def run_server(context: RuntimeContext, action: str) -> int:
    server = context.server
    if action == "status":
        healthy = await server.check_health()
        _emit({"url": server.url, "healthy": healthy})
        await server.shutdown()
        return 0 if healthy else 1

    events = server.subscribe()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    await server.ensure_running()
    _emit({
        "url": server.url,
        "pid": server.state.pid,
        "weStarted": server.we_started_server,
    })
    try:
        while not stop.is_set():
            getter = asyncio.ensure_future(events.get())
            stopper = asyncio.ensure_future(stop.wait())
            done, _ = await asyncio.wait({getter, stopper}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                break
            stopper.cancel()
            event = getter.result()
            _emit({"event": event.kind, **event.data})
            if event.kind == "crash":
                logger.warning("OpenCode server crashed; restarting")
                await server.ensure_running()
    finally:
        server.unsubscribe(events)
        await server.shutdown()
    return 0


async def _run(args) -> int:
    context = load_context(args.config)
    log_file = setup_logging(context.config, args.verbose)
    logger.info("agentbridge %s (log=%s)", args.command, log_file)

    registry = build_provider_registry(context)
    try:
        if args.command == "chat":
            return await run_chat(registry, args)
        if args.command == "status":
            return await run_status(registry)
        if args.command == "models":
            return await run_models(registry, context, args.refresh)
        if args.command == "server":
            return await run_server(context, args.action)
        return 2
    except BridgeError as exc:
        logger.error("%s failed: %s", args.command, exc)
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        await registry.shutdown_all()
        await context.reset()


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentbridge",
        description="Drive coding-agent backends through one chunk protocol",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (bridge settings and providers)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Debug logging, also echoed to stderr",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="Run one chat turn and print chunks as JSON lines")
    chat.add_argument("prompt", help="Prompt text, or - to read stdin")
    chat.add_argument("--provider", "-p", help="Registered provider name")
    chat.add_argument("--cwd", default=os.getcwd(), help="Working directory for the agent")
    chat.add_argument("--session-id", help="Resume this backend session")
    chat.add_argument("--sub-chat-id", help="Caller-side chat id (default: random)")
    chat.add_argument("--model", help="Model id (OpenCode: provider/model)")
    chat.add_argument("--plan", action="store_true", help="Plan mode (read-only)")
    chat.add_argument("--reasoning-effort", choices=["minimal", "low", "medium", "high", "xhigh"])
    chat.add_argument("--image", action="append", default=[], metavar="PATH", help="Attach an image")
    chat.add_argument(
        "--diff-key", action="append", default=[], metavar="KEY",
        help="Diff key already shown by a previous turn",
    )

    sub.add_parser("status", help="Availability and auth per provider")

    models = sub.add_parser("models", help="List OpenCode models")
    models.add_argument("--refresh", action="store_true", help="Bypass the model cache")

    server = sub.add_parser("server", help="OpenCode server supervision")
    server.add_argument("action", choices=["run", "status"])

    args = parser.parse_args()
    try:
        code = asyncio.run(_run(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
