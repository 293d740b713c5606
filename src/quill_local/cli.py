"""quill-local command-line interface."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from quill_local import __version__
from quill_local.types import DEFAULT_HOST, DEFAULT_MODEL, DEFAULT_PORT

_LOG_LEVELS = ("debug", "info", "warning", "error")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="quill-local",
        description="On-device text prediction server.",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"quill-local {__version__}",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Application data directory  [default: $QUILL_LOCAL_HOME or ~/.local/share/quill-local]",
    )
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        default="info",
        help="Logging verbosity  [default: info]",
    )

    sub = parser.add_subparsers(dest="command")

    # -- serve --------------------------------------------------------------
    serve_parser = sub.add_parser("serve", help="Start the HTTP + WebSocket server.")
    serve_parser.add_argument(
        "--model",
        default=None,
        help=f"Model to select (see 'quill-local list')  [default: saved or {DEFAULT_MODEL}]",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"Server port  [default: {DEFAULT_PORT}]",
    )
    serve_parser.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=f"Bind address  [default: {DEFAULT_HOST}]",
    )
    serve_parser.add_argument(
        "--threads",
        type=int,
        default=None,
        help="Number of inference threads  [default: llama.cpp decides]",
    )

    # -- list ---------------------------------------------------------------
    list_parser = sub.add_parser("list", help="Show available models.")
    list_parser.add_argument(
        "--installed",
        action="store_true",
        help="Show only downloaded models.",
    )

    # -- download -----------------------------------------------------------
    dl_parser = sub.add_parser("download", help="Download a model without loading it.")
    dl_parser.add_argument(
        "model",
        nargs="?",
        default=DEFAULT_MODEL,
        help=f"Model to download  [default: {DEFAULT_MODEL}]",
    )

    # -- dispatch -----------------------------------------------------------
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "serve":
        _cmd_serve(args)
    elif args.command == "list":
        _cmd_list(args)
    elif args.command == "download":
        _cmd_download(args)
    else:
        parser.print_help()
        sys.exit(0)


# ---------------------------------------------------------------------------
# Subcommand implementations
# ---------------------------------------------------------------------------


def _cmd_serve(args: argparse.Namespace) -> None:
    """Start the quill-local server."""
    import uvicorn

    from quill_local.backends.llama import LlamaBinding
    from quill_local.errors import QuillError
    from quill_local.models import LifecycleManager, get_model
    from quill_local.models.registry import data_dir
    from quill_local.server import create_app
    from quill_local.service import TextPredictionService
    from quill_local.settings import MODEL_ID_KEY, SettingsStore

    root = args.data_dir or data_dir()
    store = SettingsStore(root / "settings.json")

    model_id = args.model or store.get(MODEL_ID_KEY) or DEFAULT_MODEL
    try:
        entry = get_model(model_id)
    except QuillError as exc:
        print(exc, file=sys.stderr)
        sys.exit(2)
    if args.model:
        store.set(MODEL_ID_KEY, model_id)

    manager = LifecycleManager(
        LlamaBinding(n_threads=args.threads), root=root, model_id=model_id
    )
    app = create_app(TextPredictionService(manager, store))

    print(f"quill-local v{__version__}")
    print(f"Model:   {entry.display_name}")
    print(f"Data:    {root}")
    print(f"Server:  http://{args.host}:{args.port}")
    print(f"WS:      ws://{args.host}:{args.port}/events")
    print()

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


def _cmd_list(args: argparse.Namespace) -> None:
    """Print available models."""
    from quill_local.models import is_downloaded, list_models

    models = list_models()

    if args.installed:
        models = [m for m in models if is_downloaded(m.id, args.data_dir)]
        if not models:
            print("No models installed. Run 'quill-local download' to fetch one.")
            return

    print("Available models:\n")
    for m in models:
        marker = "*" if is_downloaded(m.id, args.data_dir) else " "
        size_mb = m.size_bytes // 1_000_000
        print(f"  {marker} {m.id:<14s} {size_mb:>6d}MB   {m.display_name}")
    print()
    print("  * = installed")


def _cmd_download(args: argparse.Namespace) -> None:
    """Download a model with a progress line on stderr."""
    from quill_local.cancel import CancelToken
    from quill_local.errors import DownloadCancelledError, QuillError
    from quill_local.models import DownloadCoordinator, get_model

    try:
        entry = get_model(args.model)
    except QuillError as exc:
        print(exc, file=sys.stderr)
        sys.exit(2)

    coordinator = DownloadCoordinator(args.data_dir)
    cancel = CancelToken()

    last_pct = -1

    def report(pct: int) -> None:
        nonlocal last_pct
        if pct != last_pct:
            last_pct = pct
            _progress(f"\r  {entry.display_name}: {pct}%")

    try:
        path = asyncio.run(coordinator.download(entry, report, cancel))
    except KeyboardInterrupt:
        cancel.cancel()
        _progress("\n")
        print("Download cancelled.", file=sys.stderr)
        sys.exit(130)
    except DownloadCancelledError:
        _progress("\n")
        print("Download cancelled.", file=sys.stderr)
        sys.exit(130)
    except QuillError as exc:
        _progress("\n")
        print(f"Download failed: {exc}", file=sys.stderr)
        sys.exit(1)

    _progress("\n")
    print(f"Model ready: {path}")


def _progress(msg: str) -> None:
    print(msg, end="", file=sys.stderr, flush=True)


if __name__ == "__main__":
    main()
