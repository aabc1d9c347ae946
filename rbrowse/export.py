"""Stream a snapshot subtree into a ZIP archive.

    export = ZipExport(source, binding, "4f2a9c1e", "/srv/www").prepare()
    ...send headers...
    export.stream(sink)

prepare() validates the root and lists it, so the usual failures (bad path,
unknown snapshot, unreadable repository) surface before a single archive byte
reaches the sink. Once stream() has opened the archive, any failure is raised
as ExportAbortedError and the output must be treated as incomplete.
"""

import stat
import time
import zipfile
from dataclasses import dataclass

from rbrowse.errors import ExportAbortedError, RbrowseError
from rbrowse.models import check_snapshot_id, without_self
from rbrowse.paths import archive_filename, check_safe, normalize_dir, rebase

_ZIP_MIN_DATE = (1980, 1, 1, 0, 0, 0)
_ZIP_MAX_YEAR = 2107


@dataclass
class ExportResult:
    root: str
    filename: str
    entries: int = 0
    bytes: int = 0


def _zip_date_time(node):
    modified = node.modified
    if modified is None:
        return time.localtime()[:6]
    if modified.year < _ZIP_MIN_DATE[0]:
        return _ZIP_MIN_DATE
    if modified.year > _ZIP_MAX_YEAR:
        return (_ZIP_MAX_YEAR, 12, 31, 23, 59, 58)
    # Wall-clock time of the backed-up host; ZIP has no zone field.
    return modified.timetuple()[:6]


def _close_after_failure(zf):
    """Finish the archive trailer if the sink still accepts bytes."""
    try:
        zf.close()
    except OSError:
        pass  # sink is gone; the caller already gets ExportAbortedError


class ZipExport:
    """One export of one directory of one snapshot."""

    def __init__(self, source, binding, snapshot_id, requested_root, cancel=None):
        self.source = source
        self.binding = binding
        self.snapshot_id = check_snapshot_id(snapshot_id)
        self.root = normalize_dir(check_safe(requested_root))
        self.filename = archive_filename(self.root)
        self.cancel = cancel
        self._root_nodes = None

    def prepare(self):
        """List the export root. Errors propagate unchanged; nothing is written."""
        if self._root_nodes is None:
            self._root_nodes = self._list(self.root)
        return self

    def stream(self, sink):
        """Write the archive into sink (seekable or not). Returns an ExportResult."""
        self.prepare()
        result = ExportResult(root=self.root, filename=self.filename)
        zf = zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED)
        try:
            self._visit(zf, self.root, self._root_nodes, result)
        except (RbrowseError, OSError) as e:
            _close_after_failure(zf)
            raise ExportAbortedError(self.root, e) from e
        except BaseException:
            _close_after_failure(zf)
            raise
        zf.close()
        return result

    # ------------------------------------------------------------------
    # Traversal
    # ------------------------------------------------------------------

    def _list(self, dir_path):
        return self.source.list_directory(
            self.binding, self.snapshot_id, dir_path, cancel=self.cancel,
        )

    def _visit(self, zf, dir_path, nodes, result):
        for node in sorted(without_self(nodes, dir_path), key=lambda n: n.path):
            if node.is_dir:
                self._visit(zf, node.dir_path, self._list(node.dir_path), result)
            elif node.is_file:
                self._add_file(zf, node, result)
            # symlinks, devices, fifos: no content to dump

    def _add_file(self, zf, node, result):
        info = zipfile.ZipInfo(rebase(node.path, self.root), date_time=_zip_date_time(node))
        info.compress_type = zipfile.ZIP_DEFLATED
        if node.permissions:
            info.external_attr = (stat.S_IFREG | node.permissions) << 16
        if node.size is not None:
            info.file_size = node.size  # lets zipfile decide on ZIP64 up front

        with zf.open(info, mode="w", force_zip64=node.size is None) as entry:
            written = self.source.dump_file(
                self.binding, self.snapshot_id, node.path, entry, cancel=self.cancel,
            )
        result.entries += 1
        result.bytes += written


def export_zip(source, binding, snapshot_id, requested_root, sink, cancel=None):
    """Prepare and stream in one go. Returns an ExportResult."""
    export = ZipExport(source, binding, snapshot_id, requested_root, cancel=cancel)
    return export.prepare().stream(sink)
