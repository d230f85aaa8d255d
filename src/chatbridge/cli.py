"""CLI entrypoint for chatbridge."""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from chatbridge.api_server import bind_first_free_port, write_server_info
from chatbridge.clipboard import Clipboard
from chatbridge.config import BridgeConfig, load_config
from chatbridge.focus import build_focus_arbiter
from chatbridge.noise import load_overrides, noise_filter_from_overrides
from chatbridge.session_controller import SessionController
from chatbridge.storage import append_log, status_payload, tail_lines
from chatbridge.surface import AutomationSurface
from chatbridge.surface_scripts import PageSelectors
from chatbridge.web_common import is_valid_url, playwright_available


def main(argv: list[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.command == "serve":
        serve_command(_config_from_args(args))
        return
    if args.command == "status":
        print(json.dumps(status_payload(load_config().runs_dir), indent=2, ensure_ascii=False))
        return
    if args.command == "logs":
        logs_command(args.tail, server=args.server)
        return

    parser.print_help()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatbridge",
        description="OpenAI-compatible chat-completions endpoint backed by a web chat UI.",
    )
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Launch the chat surface and listen for requests")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port-start", type=int, default=None)
    serve_parser.add_argument("--port-end", type=int, default=None)
    serve_parser.add_argument("--target-url", type=str, default=None)
    serve_parser.add_argument("--user-data-dir", type=Path, default=None)
    serve_parser.add_argument("--headless", action="store_true", default=None)
    serve_parser.add_argument("--focus-backend", choices=("auto", "x11", "null"), default=None)
    serve_parser.add_argument("--cookies-file", type=Path, default=None)
    serve_parser.add_argument("--noise-file", type=Path, default=None)

    subparsers.add_parser("status", help="Show latest session status")

    logs_parser = subparsers.add_parser("logs", help="Tail logs for the latest session")
    logs_parser.add_argument("--tail", type=int, default=200)
    logs_parser.add_argument("--server", action="store_true", help="Tail the server log instead")
    return parser


def _config_from_args(args: argparse.Namespace) -> BridgeConfig:
    config = load_config().with_overrides(
        host=args.host,
        port_start=args.port_start,
        port_end=args.port_end,
        target_url=args.target_url,
        user_data_dir=args.user_data_dir,
        headless=args.headless,
        focus_backend=args.focus_backend,
        noise_file=args.noise_file,
    )
    if args.cookies_file is not None:
        if not args.cookies_file.exists():
            raise SystemExit(f"Cookies file not found: {args.cookies_file}")
        config = config.with_overrides(cookies=args.cookies_file.read_text(encoding="utf-8").strip())
    if not (0 < config.port_start <= config.port_end < 65536):
        raise SystemExit(f"Invalid port range: {config.port_start}-{config.port_end}")
    if not is_valid_url(config.target_url):
        raise SystemExit(f"Invalid target URL: {config.target_url}")
    return config


def serve_command(config: BridgeConfig) -> None:
    if not playwright_available():
        raise SystemExit(
            "Playwright is required. Install with: pip install playwright && playwright install chromium"
        )
    overrides = load_overrides(config.noise_file)
    selectors = PageSelectors.from_overrides(overrides)
    noise_filter = noise_filter_from_overrides(overrides)
    server_log = config.runs_dir / "server.log"

    surface = AutomationSurface(
        target_url=config.target_url,
        user_data_dir=config.user_data_dir,
        selectors=selectors,
        headless=config.headless,
        cookies=config.cookies,
        log_path=server_log,
    )
    arbiter = build_focus_arbiter(
        config.focus_backend,
        headless=config.headless,
        title_hint=surface.window_title_hint,
        settle_ms=config.focus_settle_ms,
    )
    controller = SessionController(
        surface,
        arbiter,
        clipboard=Clipboard(),
        noise_filter=noise_filter,
        detector_config=config.detector,
        generic_min_length=selectors.generic_min_length,
        runs_dir=config.runs_dir,
    )

    server = bind_first_free_port(
        config.host,
        config.port_start,
        config.port_end,
        controller,
        log_path=server_log,
    )
    host, port = server.server_address[:2]
    write_server_info(config.runs_dir, server, target_url=config.target_url)
    append_log(server_log, f"listening host={host} port={port} focus_backend={arbiter.name}")

    controller.start()
    print(f"chatbridge listening on http://{host}:{port}/v1 (focus: {arbiter.name})")
    print(f"Point clients at OPENAI_API_BASE=http://{host}:{port}/v1")
    print("Sign in to the chat page in the automation window if you have not already.")
    try:
        server.serve_forever(poll_interval=0.5)
    except KeyboardInterrupt:
        print("Shutting down.")
    finally:
        server.server_close()
        controller.stop()
        append_log(server_log, "stopped")


def logs_command(tail_count: int, *, server: bool = False) -> None:
    runs_dir = load_config().runs_dir
    if server:
        lines = tail_lines(runs_dir / "server.log", tail_count)
        if not lines:
            raise SystemExit("No server log available yet.")
        print("\n".join(lines))
        return
    payload = status_payload(runs_dir)
    if payload.get("status") == "no-sessions":
        raise SystemExit("No sessions available yet.")
    run_dir = Path(payload["run_dir"])
    print("\n".join(tail_lines(run_dir / "bridge.log", tail_count)))
