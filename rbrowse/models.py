import re
import stat
from dataclasses import dataclass, field
from datetime import datetime, timezone

from rbrowse.errors import InvalidSnapshotIdError
from rbrowse.paths import normalize_dir

SHORT_ID_LENGTH = 8
LATEST = "latest"

_SNAPSHOT_ID_RE = re.compile(r"^[0-9a-fA-F]{1,64}$")

# restic emits nanosecond precision; datetime.fromisoformat() stops at micro.
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def parse_time(value):
    """Parse an RFC 3339 timestamp from restic. Returns None if unparsable."""
    if not value:
        return None
    text = _FRACTION_RE.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def check_snapshot_id(value):
    """Accept a full or abbreviated hex ID, or "latest". Returns the value."""
    value = value or ""
    if value != LATEST and not _SNAPSHOT_ID_RE.match(value):
        raise InvalidSnapshotIdError(value)
    return value


@dataclass(frozen=True)
class Snapshot:
    id: str
    short_id: str
    time: datetime | None
    hostname: str = ""
    username: str = ""
    paths: list = field(default_factory=list)
    tags: list = field(default_factory=list)


@dataclass(frozen=True)
class Node:
    """One entry of a directory listing inside a snapshot."""

    name: str
    path: str
    type: str
    size: int | None = None
    mtime: str = ""
    mode: int = 0

    @property
    def is_dir(self):
        return self.type == "dir"

    @property
    def is_file(self):
        return self.type == "file"

    @property
    def dir_path(self):
        return normalize_dir(self.path)

    @property
    def permissions(self):
        return stat.S_IMODE(self.mode)

    @property
    def modified(self):
        return parse_time(self.mtime)


def sort_nodes(nodes):
    """Directories first, then case-insensitive name."""
    return sorted(nodes, key=lambda n: (not n.is_dir, n.name.lower()))


def without_self(nodes, dir_path):
    """Drop the node that describes dir_path itself, if the listing has one."""
    here = normalize_dir(dir_path)
    return [n for n in nodes if normalize_dir(n.path) != here]
