import posixpath

import pytest

from rbrowse.errors import ExternalToolError
from rbrowse.models import Node, Snapshot, parse_time
from rbrowse.repos import Binding
from rbrowse.source.base import SnapshotSource

MTIME = "2023-05-04T10:20:30.123456789+02:00"
FILE_MODE = 0o644
DIR_MODE = 2147484141  # os.ModeDir | 0755 as restic reports it


class FakeSource(SnapshotSource):
    """In-memory snapshot tree that answers like `restic ls` / `restic dump`.

    files: {"/docs/readme.txt": b"..."}; parent directories are implied.
    """

    def __init__(self, files, empty_dirs=(), snapshots=(), self_node=True, modes=None, mtimes=None):
        self.files = dict(files)
        self.dirs = {"/"}
        for path in list(self.files) + list(empty_dirs):
            parent = path if path in empty_dirs else posixpath.dirname(path)
            while parent != "/":
                self.dirs.add(parent)
                parent = posixpath.dirname(parent)
        self.snapshots = list(snapshots)
        self.self_node = self_node
        self.modes = modes or {}
        self.mtimes = mtimes or {}
        self.fail_list = set()
        self.fail_dump = set()
        self.calls = []

    def _node(self, path, kind):
        return Node(
            name=posixpath.basename(path),
            path=path,
            type=kind,
            size=len(self.files[path]) if kind == "file" else None,
            mtime=self.mtimes.get(path, MTIME),
            mode=self.modes.get(path, FILE_MODE if kind == "file" else DIR_MODE),
        )

    def list_snapshots(self, binding, cancel=None):
        self.calls.append(("snapshots",))
        return list(self.snapshots)

    def list_directory(self, binding, snapshot_id, dir_path, cancel=None):
        self.calls.append(("ls", snapshot_id, dir_path))
        target = dir_path.rstrip("/") or "/"
        if target in self.fail_list:
            raise ExternalToolError("restic ls", 1, f"Fatal: cannot list {target}")
        if target not in self.dirs:
            raise ExternalToolError("restic ls", 1, f"Fatal: path {target} not found")

        nodes = []
        if self.self_node and target != "/":
            nodes.append(self._node(target, "dir"))
        for d in sorted(self.dirs, reverse=True):
            if d != "/" and posixpath.dirname(d) == target:
                nodes.append(self._node(d, "dir"))
        for f in sorted(self.files, reverse=True):
            if posixpath.dirname(f) == target:
                nodes.append(self._node(f, "file"))
        return nodes

    def dump_file(self, binding, snapshot_id, file_path, sink, cancel=None):
        self.calls.append(("dump", snapshot_id, file_path))
        if file_path in self.fail_dump:
            sink.write(b"partial")
            raise ExternalToolError("restic dump", 1, f"Fatal: cannot dump {file_path}")
        data = self.files[file_path]
        half = len(data) // 2
        sink.write(data[:half])
        sink.write(data[half:])
        return len(data)


@pytest.fixture
def binding():
    return Binding(id="SRV001", path="/repo/srv001", password="hunter2")


@pytest.fixture
def docs_source():
    return FakeSource({
        "/docs/readme.txt": b"hello world\n",
        "/docs/img/logo.png": b"\x89PNG",
        "/etc/hosts": b"127.0.0.1 localhost\n",
    }, snapshots=[
        Snapshot(id="4f2a9c1e" + "0" * 56, short_id="4f2a9c1e", time=parse_time("2024-01-02T03:04:05Z"),
                 hostname="web1", username="root", paths=["/docs"], tags=["daily"]),
    ])


@pytest.fixture(autouse=True)
def rbrowse_home(tmp_path, monkeypatch):
    """Point every ~/.rbrowse path at a temporary directory."""
    home = tmp_path / "rbrowse-home"
    monkeypatch.setattr("rbrowse.config.HOME_DIR", home)
    monkeypatch.setattr("rbrowse.config.GLOBAL_CONFIG_FILE", home / "config.json")
    monkeypatch.setattr("rbrowse.credentials.CREDENTIALS_FILE", home / "credentials")
    monkeypatch.setattr("rbrowse.log.LOGS_FILE", home / "logs.jsonl")
    for var in ("RESTIC_BINARY", "RBROWSE_REPO_ROOT", "RESTIC_CACHE_DIR", "RESTIC_NO_LOCK",
                "RBROWSE_HOST", "RBROWSE_PORT", "BASIC_AUTH_USER", "BASIC_AUTH_PASS",
                "RESTIC_PASSWORD", "RESTIC_PASSWORD_FILE", "RESTIC_REPOSITORY"):
        monkeypatch.delenv(var, raising=False)
    return home
