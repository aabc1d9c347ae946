"""Audit log and server diagnostics.

Export and download events are appended as JSON lines to
~/.rbrowse/logs.jsonl: what was requested (repo, snapshot, path), how it
ended (ok, failed, cancelled) and how much was sent. Passwords never reach
this file.

Diagnostics that cannot be reported to an HTTP client (the response is
already streaming) go to stderr through a rich Console.
"""

import json
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from rbrowse.config import HOME_DIR

LOGS_FILE = HOME_DIR / "logs.jsonl"

err_console = Console(stderr=True)


def write_log(entry, path=None):
    """Append an audit log entry."""
    path = Path(path) if path else LOGS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    entry["timestamp"] = datetime.now().isoformat()
    with open(path, "a") as f:
        f.write(json.dumps(entry) + "\n")


def read_logs(limit=20, repo=None, path=None):
    """Most recent entries, oldest first. Malformed lines are skipped."""
    path = Path(path) if path else LOGS_FILE
    if not path.exists():
        return []

    entries = []
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if repo and entry.get("repo", "").upper() != repo.upper():
            continue
        entries.append(entry)
    return entries[-limit:] if limit else entries


def report(message, style="red"):
    """Print a server-side diagnostic line."""
    err_console.print(f"[{style}]{escape(message)}[/{style}]", highlight=False)
