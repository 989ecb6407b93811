import argparse
import os
from pathlib import Path

import uvicorn


def _maybe_load_dotenv(path: Path) -> None:
    if not path.exists() or not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if not key:
            continue
        if value and value[0] in {"'", '"'} and value[-1] == value[0]:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="claude-cli-to-api",
        description="Expose the Claude Code CLI as an OpenAI-compatible /v1 API.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "doctor"],
        help="`serve` (default) runs the gateway; `doctor` checks the claude CLI setup.",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Bind host (default: CLAUDE_GATEWAY_HOST or 127.0.0.1).",
    )
    parser.add_argument(
        "--port",
        default=None,
        type=int,
        help="Bind port (default: CLAUDE_GATEWAY_PORT or 3456).",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable uvicorn reload (dev only).",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("CLAUDE_GATEWAY_LOG_LEVEL", "info"),
        help="Uvicorn log level (default: info).",
    )
    parser.add_argument(
        "--env-file",
        default=None,
        help="Optionally load environment variables from this .env file.",
    )
    parser.add_argument(
        "--auto-env",
        action="store_true",
        help="Auto-load .env from the current directory (default: off).",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Environment must be settled before `config` is imported: Settings reads it once.
    if args.env_file:
        path = Path(args.env_file)
        if not path.is_file():
            raise SystemExit(f"env file not found: {path}")
        _maybe_load_dotenv(path)
        print(f"[claude-cli-to-api] loaded env: {path}")
    elif args.auto_env:
        candidate = Path.cwd() / ".env"
        if candidate.is_file():
            _maybe_load_dotenv(candidate)
            print(f"[claude-cli-to-api] loaded env: {candidate}")

    if args.command == "doctor":
        import asyncio

        from .doctor import run_doctor

        raise SystemExit(asyncio.run(run_doctor()))

    from .config import settings

    uvicorn.run(
        "claude_gateway.server:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
        log_level=args.log_level,
    )


__all__ = ["main"]
