"""SnapshotSource backed by the restic command line.

    restic [--no-lock] snapshots --json          -> one JSON array
    restic [--no-lock] ls --json -- <snap> <dir>  -> newline-delimited JSON
    restic [--no-lock] dump -- <snap> <file>       -> raw file bytes on stdout

Snapshot IDs are checked and placed after "--", so nothing a caller passes
is read as a restic option.

Repository location and password travel through the environment, which is
rebuilt for every call from the binding and never printed.
"""

import json
import os
import subprocess
import threading
from contextlib import contextmanager, suppress
from datetime import datetime, timezone

from rbrowse.errors import ExternalToolError, MalformedOutputError, OperationCancelledError
from rbrowse.models import SHORT_ID_LENGTH, Node, Snapshot, check_snapshot_id, parse_time
from rbrowse.source.base import SnapshotSource

DEFAULT_TIMEOUT = 600  # seconds, listing calls only; dumps run as long as they stream
CHUNK_SIZE = 64 * 1024
_CANCEL_POLL = 0.1
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def restic_args(binding, *args):
    if binding.no_lock:
        return ["--no-lock", *args]
    return list(args)


def restic_env(binding, cache_dir=""):
    env = os.environ.copy()
    env["RESTIC_REPOSITORY"] = binding.path
    if binding.password_file:
        env.pop("RESTIC_PASSWORD", None)
        env["RESTIC_PASSWORD_FILE"] = binding.password_file
    else:
        env.pop("RESTIC_PASSWORD_FILE", None)
        env["RESTIC_PASSWORD"] = binding.password or ""
    if cache_dir:
        env["RESTIC_CACHE_DIR"] = cache_dir
    return env


def _kill(proc):
    if proc.poll() is None:
        with suppress(ProcessLookupError):
            proc.kill()


def _check_cancel(cancel, what):
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError(f"{what} cancelled")


@contextmanager
def _kill_on_cancel(proc, cancel):
    """Kill proc as soon as cancel is set, for as long as the block runs."""
    if cancel is None:
        yield
        return

    done = threading.Event()

    def _watch():
        while not done.is_set():
            if cancel.wait(timeout=_CANCEL_POLL):
                _kill(proc)
                return

    watcher = threading.Thread(target=_watch, daemon=True, name="rbrowse-cancel")
    watcher.start()
    try:
        yield
    finally:
        done.set()
        watcher.join()


def _drain(stream, chunks):
    for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
        chunks.append(chunk)


# ----------------------------------------------------------------------
# Output parsing
# ----------------------------------------------------------------------

def parse_snapshots(data):
    """Parse `restic snapshots --json` output, newest first."""
    try:
        raw = json.loads(data)
    except ValueError as e:
        raise MalformedOutputError(f"restic snapshots: invalid JSON: {e}") from e
    if not isinstance(raw, list):
        raise MalformedOutputError("restic snapshots: expected a JSON array")

    snapshots = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("id"):
            raise MalformedOutputError(f"restic snapshots: unexpected record {item!r:.200}")
        snap_id = str(item["id"])
        snapshots.append(Snapshot(
            id=snap_id,
            short_id=item.get("short_id") or snap_id[:SHORT_ID_LENGTH],
            time=parse_time(item.get("time")),
            hostname=item.get("hostname") or "",
            username=item.get("username") or "",
            paths=list(item.get("paths") or []),
            tags=list(item.get("tags") or []),
        ))

    snapshots.sort(key=lambda s: s.time or _EPOCH, reverse=True)
    return snapshots


def _is_node_record(record):
    # restic >= 0.15 uses message_type; older releases only set struct_type.
    return (record.get("message_type") or record.get("struct_type")) == "node"


def parse_listing(data):
    """Parse `restic ls --json` output, keeping only node records."""
    nodes = []
    for lineno, line in enumerate(data.splitlines(), 1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError as e:
            raise MalformedOutputError(f"restic ls: line {lineno}: invalid JSON: {e}") from e
        if not isinstance(record, dict):
            raise MalformedOutputError(f"restic ls: line {lineno}: expected an object")
        if not _is_node_record(record):
            continue
        if not record.get("path"):
            raise MalformedOutputError(f"restic ls: line {lineno}: node without a path")

        kind = record.get("type") or ""
        try:
            size = int(record["size"]) if kind == "file" and record.get("size") is not None else None
            mode = int(record.get("mode") or 0)
        except (TypeError, ValueError) as e:
            raise MalformedOutputError(f"restic ls: line {lineno}: {e}") from e
        nodes.append(Node(
            name=record.get("name") or "",
            path=record["path"],
            type=kind,
            size=size,
            mtime=record.get("mtime") or "",
            mode=mode,
        ))
    return nodes


# ----------------------------------------------------------------------
# Source
# ----------------------------------------------------------------------

class ResticSource(SnapshotSource):

    def __init__(self, binary="restic", cache_dir="", timeout=DEFAULT_TIMEOUT):
        self.binary = binary
        self.cache_dir = cache_dir
        self.timeout = timeout

    def list_snapshots(self, binding, cancel=None):
        out = self._run(binding, ["snapshots", "--json"], cancel)
        return parse_snapshots(out)

    def list_directory(self, binding, snapshot_id, dir_path, cancel=None):
        # restic wants directories without the trailing separator.
        target = dir_path.rstrip("/") or "/"
        check_snapshot_id(snapshot_id)
        out = self._run(binding, ["ls", "--json", "--", snapshot_id, target], cancel)
        return parse_listing(out)

    def dump_file(self, binding, snapshot_id, file_path, sink, cancel=None):
        """Copy `restic dump` stdout into sink chunk by chunk.

        The process is killed if the sink raises, the caller is interrupted or
        cancel is set; it is always reaped before this returns.
        """
        check_snapshot_id(snapshot_id)
        label = f"{self.binary} dump"
        _check_cancel(cancel, label)
        proc = self._popen(binding, ["dump", "--", snapshot_id, file_path])

        stderr_chunks = []
        drain = threading.Thread(
            target=_drain, args=(proc.stderr, stderr_chunks), daemon=True, name="rbrowse-stderr",
        )
        drain.start()

        written = 0
        try:
            with _kill_on_cancel(proc, cancel):
                for chunk in iter(lambda: proc.stdout.read(CHUNK_SIZE), b""):
                    sink.write(chunk)
                    written += len(chunk)
                proc.wait()
        except BaseException:
            _kill(proc)
            raise
        finally:
            proc.wait()
            drain.join()
            proc.stdout.close()
            proc.stderr.close()

        _check_cancel(cancel, label)
        if proc.returncode != 0:
            stderr = b"".join(stderr_chunks).decode("utf-8", "replace")
            raise ExternalToolError(label, proc.returncode, stderr)
        return written

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _popen(self, binding, args):
        cmd = [self.binary] + restic_args(binding, *args)
        try:
            return subprocess.Popen(
                cmd,
                env=restic_env(binding, self.cache_dir),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as e:
            raise ExternalToolError(f"{self.binary} {args[0]}", stderr=str(e)) from e

    def _run(self, binding, args, cancel=None):
        """Run a listing command to completion. Returns stdout bytes."""
        label = f"{self.binary} {args[0]}"
        _check_cancel(cancel, label)
        proc = self._popen(binding, args)
        with _kill_on_cancel(proc, cancel):
            try:
                out, err = proc.communicate(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                _kill(proc)
                proc.communicate()
                raise ExternalToolError(label, stderr=f"timed out after {self.timeout}s")
            except BaseException:
                _kill(proc)
                proc.wait()
                raise

        _check_cancel(cancel, label)
        if proc.returncode != 0:
            raise ExternalToolError(label, proc.returncode, err.decode("utf-8", "replace"))
        return out
