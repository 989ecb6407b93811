from __future__ import annotations

import asyncio
import os
import shutil

from rich.console import Console
from rich.table import Table

from .config import settings

_VERSION_TIMEOUT_SECONDS = 15


async def _cli_version(path: str) -> tuple[bool, str]:
    try:
        proc = await asyncio.create_subprocess_exec(
            path,
            "--version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return False, f"cannot execute: {e}"
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=_VERSION_TIMEOUT_SECONDS)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return False, f"`--version` did not finish within {_VERSION_TIMEOUT_SECONDS}s"
    if proc.returncode != 0:
        detail = err.decode(errors="ignore").strip() or f"exit status {proc.returncode}"
        return False, detail
    return True, out.decode(errors="ignore").strip() or "(no version output)"


async def run_doctor(console: Console | None = None) -> int:
    """Check that the gateway can run the claude CLI. Returns a process exit code."""
    console = console or Console()
    table = Table(title="claude-cli-to-api doctor", border_style="dim")
    table.add_column("Check", style="cyan")
    table.add_column("Result")
    ok = True

    resolved = shutil.which(settings.claude_bin)
    if resolved is None:
        ok = False
        table.add_row("claude binary", f"[red]not found: {settings.claude_bin}[/red]")
    else:
        table.add_row("claude binary", f"[green]{resolved}[/green]")
        version_ok, detail = await _cli_version(resolved)
        ok = ok and version_ok
        style = "green" if version_ok else "red"
        table.add_row("claude --version", f"[{style}]{detail}[/{style}]")

    if os.path.isdir(settings.workspace):
        table.add_row("workspace", f"[green]{settings.workspace}[/green]")
    else:
        ok = False
        table.add_row("workspace", f"[red]missing: {settings.workspace}[/red]")

    table.add_row("listen", f"{settings.host}:{settings.port}")
    table.add_row("auth", "bearer token" if settings.bearer_token else "off")
    table.add_row("skip permissions", str(settings.skip_permissions))
    table.add_row("concurrency", f"{settings.max_concurrency} ({settings.admission_policy})")
    table.add_row("timeout", f"{settings.timeout_seconds}s")

    console.print(table)
    return 0 if ok else 1
