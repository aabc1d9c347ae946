import io
import zipfile

import pytest
from conftest import FakeSource

from rbrowse.errors import (
    ExportAbortedError,
    ExternalToolError,
    InvalidPathError,
    InvalidSnapshotIdError,
    OperationCancelledError,
)
from rbrowse.export import ZipExport, export_zip

SNAP = "4f2a9c1e"


class _Unseekable(io.RawIOBase):
    """Write-only sink like a socket file: no tell(), no seek()."""

    def __init__(self):
        self.buffer = bytearray()

    def writable(self):
        return True

    def write(self, b):
        self.buffer.extend(b)
        return len(b)


def _entries(data):
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {info.filename: zf.read(info) for info in zf.infolist()}


# ── round trip ───────────────────────────────────────────────────────────────

def test_export_subtree_round_trip(docs_source, binding):
    sink = io.BytesIO()
    result = export_zip(docs_source, binding, "4f2a9c1e", "/docs/", sink)

    assert _entries(sink.getvalue()) == {
        "img/logo.png": b"\x89PNG",
        "readme.txt": b"hello world\n",
    }
    assert result.root == "/docs/"
    assert result.filename == "docs.zip"
    assert result.entries == 2
    assert result.bytes == 16


def test_export_accepts_root_without_slashes(docs_source, binding):
    sink = io.BytesIO()
    export_zip(docs_source, binding, "4f2a9c1e", "docs", sink)
    assert sorted(_entries(sink.getvalue())) == ["img/logo.png", "readme.txt"]


def test_export_snapshot_root(docs_source, binding):
    sink = io.BytesIO()
    result = export_zip(docs_source, binding, "4f2a9c1e", "", sink)

    assert sorted(_entries(sink.getvalue())) == ["docs/img/logo.png", "docs/readme.txt", "etc/hosts"]
    assert result.filename == "folder.zip"


def test_export_to_unseekable_sink(docs_source, binding):
    sink = _Unseekable()
    export_zip(docs_source, binding, "4f2a9c1e", "/docs/", sink)
    assert _entries(bytes(sink.buffer))["readme.txt"] == b"hello world\n"


def test_entries_are_written_in_path_order(binding):
    source = FakeSource({"/d/b.txt": b"b", "/d/a/z.txt": b"z", "/d/c.txt": b"c"})
    sink = io.BytesIO()
    export_zip(source, binding, SNAP, "/d/", sink)

    with zipfile.ZipFile(io.BytesIO(sink.getvalue())) as zf:
        assert zf.namelist() == ["a/z.txt", "b.txt", "c.txt"]


def test_empty_directory_exports_empty_archive(binding):
    source = FakeSource({}, empty_dirs=["/empty"])
    sink = io.BytesIO()
    result = export_zip(source, binding, SNAP, "/empty/", sink)

    assert result.entries == 0
    assert _entries(sink.getvalue()) == {}


# ── self node ────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("self_node", [True, False])
def test_self_node_presence_does_not_change_archive(binding, self_node):
    source = FakeSource({"/docs/readme.txt": b"hi", "/docs/img/logo.png": b"png"}, self_node=self_node)
    sink = io.BytesIO()
    result = export_zip(source, binding, SNAP, "/docs/", sink)

    assert sorted(_entries(sink.getvalue())) == ["img/logo.png", "readme.txt"]
    assert result.entries == 2
    listed = [c[2] for c in source.calls if c[0] == "ls"]
    assert listed == ["/docs/", "/docs/img/"]


# ── metadata ─────────────────────────────────────────────────────────────────

def test_permissions_and_mtime_are_propagated(binding):
    source = FakeSource(
        {"/bin/run.sh": b"#!/bin/sh\n"},
        modes={"/bin/run.sh": 0o755},
        mtimes={"/bin/run.sh": "2021-07-08T09:10:12Z"},
    )
    sink = io.BytesIO()
    export_zip(source, binding, SNAP, "/bin/", sink)

    with zipfile.ZipFile(io.BytesIO(sink.getvalue())) as zf:
        info = zf.getinfo("run.sh")
    assert (info.external_attr >> 16) & 0o777 == 0o755
    assert info.date_time == (2021, 7, 8, 9, 10, 12)
    assert info.compress_type == zipfile.ZIP_DEFLATED


def test_pre_1980_mtime_is_clamped(binding):
    source = FakeSource({"/old/a.txt": b"a"}, mtimes={"/old/a.txt": "1970-01-01T00:00:00Z"})
    sink = io.BytesIO()
    export_zip(source, binding, SNAP, "/old/", sink)

    with zipfile.ZipFile(io.BytesIO(sink.getvalue())) as zf:
        assert zf.getinfo("a.txt").date_time == (1980, 1, 1, 0, 0, 0)


# ── failures ─────────────────────────────────────────────────────────────────

def test_root_listing_failure_writes_nothing(docs_source, binding):
    docs_source.fail_list.add("/docs")
    sink = io.BytesIO()

    with pytest.raises(ExternalToolError):
        export_zip(docs_source, binding, SNAP, "/docs/", sink)
    assert sink.getvalue() == b""


def test_missing_root_writes_nothing(docs_source, binding):
    sink = io.BytesIO()
    with pytest.raises(ExternalToolError):
        export_zip(docs_source, binding, SNAP, "/nope/", sink)
    assert sink.getvalue() == b""


def test_invalid_root_is_rejected_before_listing(docs_source, binding):
    with pytest.raises(InvalidPathError):
        ZipExport(docs_source, binding, SNAP, "/docs/../etc/")
    assert docs_source.calls == []


@pytest.mark.parametrize("snapshot_id", ["--password-command=id", "4f2a9c1e /", ""])
def test_invalid_snapshot_id_is_rejected_before_listing(docs_source, binding, snapshot_id):
    sink = io.BytesIO()
    with pytest.raises(InvalidSnapshotIdError):
        export_zip(docs_source, binding, snapshot_id, "/docs/", sink)
    assert docs_source.calls == []
    assert sink.getvalue() == b""


def test_prepare_lists_root_once(docs_source, binding):
    export = ZipExport(docs_source, binding, SNAP, "/docs/").prepare().prepare()
    export.stream(io.BytesIO())
    listed = [c[2] for c in docs_source.calls if c[0] == "ls"]
    assert listed.count("/docs/") == 1


def test_subdirectory_listing_failure_aborts(docs_source, binding):
    docs_source.fail_list.add("/docs/img")
    sink = io.BytesIO()

    with pytest.raises(ExportAbortedError) as exc_info:
        export_zip(docs_source, binding, SNAP, "/docs/", sink)
    assert exc_info.value.root == "/docs/"
    assert isinstance(exc_info.value.cause, ExternalToolError)


def test_dump_failure_mid_stream_aborts(docs_source, binding):
    docs_source.fail_dump.add("/docs/readme.txt")
    sink = io.BytesIO()

    with pytest.raises(ExportAbortedError) as exc_info:
        export_zip(docs_source, binding, SNAP, "/docs/", sink)
    assert isinstance(exc_info.value.cause, ExternalToolError)
    # the first entry (img/logo.png) already reached the sink
    assert sink.getvalue() != b""


def test_cancellation_mid_stream_is_reported_as_cause(binding):
    class CancellingSource(FakeSource):
        def dump_file(self, binding, snapshot_id, file_path, sink, cancel=None):
            raise OperationCancelledError("restic dump cancelled")

    source = CancellingSource({"/a/b.txt": b"b"})
    with pytest.raises(ExportAbortedError) as exc_info:
        export_zip(source, binding, SNAP, "/a/", io.BytesIO())
    assert isinstance(exc_info.value.cause, OperationCancelledError)


def test_broken_sink_aborts(docs_source, binding):
    class BrokenSink(_Unseekable):
        def write(self, b):
            raise BrokenPipeError("client went away")

    with pytest.raises(ExportAbortedError) as exc_info:
        export_zip(docs_source, binding, SNAP, "/docs/", BrokenSink())
    assert isinstance(exc_info.value.cause, BrokenPipeError)
