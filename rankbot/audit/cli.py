"""
Audit Log Inspector — reads the durable JSON-lines audit file.

The in-memory audit window only covers the last hour or so; the durable
file (``AUDIT_LOG_FILE_ENABLED=true``) keeps everything up to its rotation
limit. This tool prints it as a table with totals.

Usage:
    python -m rankbot.audit.cli
    python -m rankbot.audit.cli --path logs/audit.log --action promote
    python -m rankbot.audit.cli --failures --limit 20
"""

from __future__ import annotations

import argparse
import sys
from collections import Counter
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table

from rankbot.audit.sink import read_records
from rankbot.config import settings

console = Console()


def filter_records(
    records: list[dict[str, Any]],
    action: str | None = None,
    failures_only: bool = False,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Newest first, matching ``action`` and, optionally, failures only."""
    selected = [
        record
        for record in reversed(records)
        if (action is None or record.get("action") == action)
        and (not failures_only or not record.get("success"))
    ]
    return selected[:limit] if limit else selected


def render(path: Path, action: str | None, failures_only: bool, limit: int) -> int:
    """Print the audit table; return the number of entries shown."""
    console.print("\n[bold blue]═══ RankBot Audit Log ═══[/bold blue]")
    console.print(f"[dim]{path}[/dim]\n")

    if not path.exists():
        console.print(f"[yellow]⚠ No audit file at {path}[/yellow]")
        return 0

    records = read_records(path)
    shown = filter_records(records, action=action, failures_only=failures_only, limit=limit)

    table = Table(show_lines=False)
    table.add_column("Time", width=20)
    table.add_column("Action", style="green", width=10)
    table.add_column("User", style="cyan")
    table.add_column("Rank", justify="right")
    table.add_column("Result", width=8)
    table.add_column("Error", style="dim")
    table.add_column("IP", style="dim")

    for record in shown:
        user = record.get("username") or str(record.get("userId") or "—")
        old_rank, new_rank = record.get("oldRank"), record.get("newRank")
        if old_rank is not None and new_rank is not None:
            rank = f"{old_rank} → {new_rank}"
        else:
            rank = str(record.get("targetRank") if record.get("targetRank") is not None else "—")
        table.add_row(
            str(record.get("timestamp", ""))[:19],
            str(record.get("action", "")),
            user,
            rank,
            "[green]✓[/green]" if record.get("success") else "[red]✗[/red]",
            record.get("error") or "",
            record.get("maskedIp") or "",
        )
    console.print(table)

    successful = sum(1 for record in records if record.get("success"))
    by_action = Counter(str(record.get("action")) for record in records)
    console.print(
        f"\n  Entries in file: [bold]{len(records)}[/bold]  "
        f"successful: [green]{successful}[/green]  "
        f"failed: [red]{len(records) - successful}[/red]"
    )
    for name, count in sorted(by_action.items()):
        console.print(f"    {name}: {count}")
    console.print(f"\n[bold blue]═══ Showing {len(shown)} ═══[/bold blue]\n")
    return len(shown)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Inspect the RankBot durable audit log")
    parser.add_argument(
        "--path",
        default=None,
        help="Audit file to read (defaults to AUDIT_LOG_PATH)",
    )
    parser.add_argument("--action", default=None, help="Only show this action")
    parser.add_argument(
        "--failures",
        action="store_true",
        help="Only show failed attempts",
    )
    parser.add_argument("--limit", type=int, default=50, help="Maximum rows to show")
    args = parser.parse_args(argv)

    path = Path(args.path or settings.audit_log_path)
    render(path, action=args.action, failures_only=args.failures, limit=args.limit)
    sys.exit(0 if path.exists() else 1)


if __name__ == "__main__":
    main()
