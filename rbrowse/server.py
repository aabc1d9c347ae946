"""Threaded HTTP front end for browsing restic repositories.

Routes:
    /                                         -> redirect to /files
    /health                                   -> 200 ok
    /files?path=                              local repository root listing
    /config?id=&path=   (GET, POST)           add or update a repository binding
    /repositories/<repo>                      snapshot list
    /repositories/<repo>/browse?snap=&path=   directory listing
    /repositories/<repo>/download?snap=&path= single file
    /repositories/<repo>/download-zip?snap=&path=  directory as streamed ZIP

Usage:
    server = BrowserServer(config, store, source)
    server.start()          # background thread, or serve_forever() to block
    ...
    server.stop()           # also cancels exports still streaming

Everything that can fail before the response starts (path validation,
repository lookup, the first restic call) is answered with a proper status
code. Once a download is streaming, failures are only reported on stderr and
in the audit log. A restic call made for a request is killed as soon as that
client disconnects.
"""

import base64
import hmac
import os
import posixpath
import re
import select
import socket
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from urllib.parse import parse_qs, quote, urlsplit

from rbrowse import render
from rbrowse.errors import (
    ExportAbortedError,
    ExternalToolError,
    InvalidPathError,
    InvalidSnapshotIdError,
    MalformedOutputError,
    OperationCancelledError,
    RepositoryConfigError,
    UnknownRepositoryError,
)
from rbrowse.export import ZipExport
from rbrowse.log import report, write_log
from rbrowse.models import check_snapshot_id, sort_nodes, without_self
from rbrowse.paths import (
    breadcrumbs,
    check_safe,
    download_filename,
    join_rel,
    normalize_dir,
    normalize_file,
    parent_of,
    parent_rel,
)
from rbrowse.repos import Binding, is_restic_repo_root, is_within, normalize_id

_REPO_ROUTE = re.compile(r"^/repositories/([^/]+)(?:/(browse|download|download-zip))?/?$")
_DISCONNECT_POLL = 0.2

# exception type -> HTTP status for failures raised before a response starts
_STATUS = [
    (InvalidPathError, 400),
    (InvalidSnapshotIdError, 400),
    (RepositoryConfigError, 400),
    (UnknownRepositoryError, 404),
    (ExternalToolError, 502),
    (MalformedOutputError, 502),
    (OperationCancelledError, 503),
]


def _attachment(filename):
    safe = filename.replace("\\", "_").replace('"', "_")
    return f"attachment; filename=\"{safe}\"; filename*=UTF-8''{quote(filename)}"


def _client_gone(sock):
    """True once the peer has closed its end of the connection."""
    try:
        readable, _, _ = select.select([sock], [], [], 0)
        return bool(readable) and sock.recv(1, socket.MSG_PEEK) == b""
    except (OSError, ValueError):
        return True


class _BrowserHandler(BaseHTTPRequestHandler):
    """Request handler; shared state lives on self.server."""

    server_version = "rbrowse"

    def log_message(self, fmt, *args):
        pass  # no access log; failures go through report()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _param(self, query, name):
        return query.get(name, [""])[0].strip()

    def _send_html(self, status, page):
        data = page.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _send_text(self, status, text):
        data = text.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _redirect(self, location):
        self.send_response(302)
        self.send_header("Location", location)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _authorized(self):
        user = self.server.config.get("auth_user", "")
        password = self.server.config.get("auth_pass", "")
        if not user and not password:
            return True  # auth disabled by default

        header = self.headers.get("Authorization", "")
        if header.startswith("Basic "):
            try:
                decoded = base64.b64decode(header[6:], validate=True).decode("utf-8")
            except (ValueError, UnicodeDecodeError):
                decoded = ""
            got_user, _, got_pass = decoded.partition(":")
            if hmac.compare_digest(got_user, user) and hmac.compare_digest(got_pass, password):
                return True

        data = b"Unauthorized\n"
        self.send_response(401)
        self.send_header("WWW-Authenticate", 'Basic realm="rbrowse"')
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)
        return False

    def _dispatch(self, route):
        if not self._authorized():
            return
        with self._watch_client():
            try:
                route()
            except tuple(exc for exc, _ in _STATUS) as e:
                status = next(code for exc, code in _STATUS if isinstance(e, exc))
                self._send_html(status, render.render_error(status, str(e)))

    @contextmanager
    def _watch_client(self):
        """Set self.cancel when the server stops or this client hangs up."""
        self.cancel = threading.Event()
        done = threading.Event()

        def _watch():
            while not done.wait(_DISCONNECT_POLL):
                if self.server.cancel.is_set() or _client_gone(self.connection):
                    self.cancel.set()
                    return

        watcher = threading.Thread(target=_watch, daemon=True, name="rbrowse-client")
        watcher.start()
        try:
            yield
        finally:
            done.set()
            watcher.join()

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def do_GET(self):
        self._dispatch(self._route_get)

    def do_POST(self):
        self._dispatch(self._route_post)

    def _route_get(self):
        url = urlsplit(self.path)
        query = parse_qs(url.query)

        if url.path == "/":
            self._redirect("/files")
            return
        if url.path == "/health":
            self._send_text(200, "ok\n")
            return
        if url.path == "/files":
            self._files(query)
            return
        if url.path == "/config":
            self._config_form(query)
            return

        match = _REPO_ROUTE.match(url.path)
        if not match:
            self._send_html(404, render.render_error(404, f"Not found: {url.path}"))
            return

        binding = self.server.store.require(match.group(1))
        action = match.group(2)
        if action is None:
            self._snapshots(binding)
            return

        snap = self._param(query, "snap")
        if not snap:
            self._send_html(400, render.render_error(400, "missing snap"))
            return
        check_snapshot_id(snap)
        path = check_safe(self._param(query, "path"))

        if action == "browse":
            self._browse(binding, snap, path)
        elif action == "download":
            self._download(binding, snap, path)
        else:
            self._download_zip(binding, snap, path)

    def _route_post(self):
        if urlsplit(self.path).path != "/config":
            self._send_html(405, render.render_error(405, "Method not allowed"))
            return
        self._config_save()

    # ------------------------------------------------------------------
    # Local repository root
    # ------------------------------------------------------------------

    def _files(self, query):
        repo_root = Path(self.server.config.get("repo_root", "/repo"))
        rel = check_safe(self._param(query, "path")).lstrip("/")
        clean = posixpath.normpath("/" + rel).lstrip("/")
        target = repo_root / clean if clean else repo_root

        if not target.exists():
            self._send_html(404, render.render_error(404, f"path not found: /{clean}"))
            return
        if not is_within(target.resolve(), repo_root.resolve()):
            raise InvalidPathError(f"/{clean}", "path leads outside the repository root")
        if not target.is_dir():
            self._send_html(400, render.render_error(400, "path is not a directory"))
            return

        store = self.server.store
        if is_restic_repo_root(target):
            binding = store.find_by_path(target)
            if binding is not None:
                self._redirect(render.repo_url(binding.id))
                return
            # unconfigured repository: still list it, the page offers a config link

        entries = []
        with os.scandir(target) as it:
            for de in it:
                is_dir = de.is_dir()
                try:
                    info = de.stat()
                except OSError:
                    info = None
                child = Path(de.path)
                is_repo = is_dir and is_restic_repo_root(child)
                binding = store.find_by_path(child) if is_repo else None
                entries.append({
                    "name": de.name,
                    "rel_path": join_rel(clean, de.name),
                    "is_dir": is_dir,
                    "size": info.st_size if info and not is_dir else None,
                    "modified": datetime.fromtimestamp(info.st_mtime) if info else None,
                    "is_repo": is_repo,
                    "repo_id": binding.id if binding else "",
                })
        entries.sort(key=lambda e: (not e["is_dir"], e["name"].lower()))

        parent, show_parent = parent_rel(clean)
        self._send_html(200, render.render_files(clean, parent, show_parent, entries))

    # ------------------------------------------------------------------
    # Repository configuration
    # ------------------------------------------------------------------

    def _config_form(self, query):
        store = self.server.store
        repo_id = normalize_id(self._param(query, "id"))
        path = store.resolve_location(self._param(query, "path"))
        no_lock = self.server.config.get("default_no_lock", True)

        existing = store.get(repo_id) if repo_id else None
        if existing is not None:
            path, no_lock = existing.path, existing.no_lock
        self._send_html(200, render.render_config(repo_id, path, no_lock))

    def _config_save(self):
        length = int(self.headers.get("Content-Length") or 0)
        form = parse_qs(self.rfile.read(length).decode("utf-8", "replace"))
        binding = Binding(
            id=self._param(form, "id"),
            path=self._param(form, "path"),
            password=form.get("password", [""])[0],
            password_file=self._param(form, "password_file"),
            no_lock=self._param(form, "no_lock") == "on",
        )
        try:
            saved = self.server.store.upsert(binding)
        except RepositoryConfigError as e:
            page = render.render_config(normalize_id(binding.id), binding.path, binding.no_lock, str(e))
            self._send_html(400, page)
            return
        self._redirect(render.repo_url(saved.id))

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def _snapshots(self, binding):
        snapshots = self.server.source.list_snapshots(binding, cancel=self.cancel)
        self._send_html(200, render.render_snapshots(binding, snapshots))

    def _browse(self, binding, snap, path):
        path = normalize_dir(path)
        nodes = self.server.source.list_directory(binding, snap, path, cancel=self.cancel)
        nodes = sort_nodes(without_self(nodes, path))
        page = render.render_browse(binding, snap, path, parent_of(path), breadcrumbs(path), nodes)
        self._send_html(200, page)

    def _download(self, binding, snap, path):
        path = normalize_file(path)
        source = self.server.source
        if path == "/":
            self._send_html(400, render.render_error(400, "missing path"))
            return

        # Look the file up first so a wrong path is a 404, not a broken download.
        parent = parent_of(normalize_dir(path)) or "/"
        node = next((n for n in source.list_directory(binding, snap, parent, cancel=self.cancel)
                     if n.path == path), None)
        if node is None or not node.is_file:
            self._send_html(404, render.render_error(404, f"no such file: {path}"))
            return

        self.send_response(200)
        self.send_header("Content-Type", "application/octet-stream")
        self.send_header("Content-Disposition", _attachment(download_filename(path)))
        if node.size is not None:
            self.send_header("Content-Length", str(node.size))
        self.end_headers()

        entry = {"event": "download", "repo": binding.id, "snapshot": snap, "path": path}
        try:
            entry["bytes"] = source.dump_file(binding, snap, path, self.wfile, cancel=self.cancel)
        except (ExternalToolError, OperationCancelledError, OSError) as e:
            self.close_connection = True
            report(f"download failed repo={binding.id} snap={snap} path={path}: {e}")
            write_log({**entry, "result": "failed", "error": str(e)})
            return
        write_log({**entry, "result": "ok"})

    def _download_zip(self, binding, snap, path):
        export = ZipExport(self.server.source, binding, snap, path, cancel=self.cancel)
        export.prepare()

        self.send_response(200)
        self.send_header("Content-Type", "application/zip")
        self.send_header("Content-Disposition", _attachment(export.filename))
        self.end_headers()
        self.close_connection = True  # no Content-Length: the end of the body is the end of the connection

        entry = {"event": "export", "repo": binding.id, "snapshot": snap, "path": export.root}
        try:
            result = export.stream(self.wfile)
        except ExportAbortedError as e:
            cancelled = isinstance(e.cause, OperationCancelledError)
            report(f"zip download failed repo={binding.id} snap={snap} path={export.root}: {e.cause}")
            write_log({**entry, "result": "cancelled" if cancelled else "failed", "error": str(e.cause)})
            return
        write_log({**entry, "result": "ok", "entries": result.entries, "bytes": result.bytes})


class _BrowserHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, *args, config, store, source, **kwargs):
        super().__init__(*args, **kwargs)
        self.config = config
        self.store = store
        self.source = source
        self.cancel = threading.Event()

    def handle_error(self, request, client_address):
        if isinstance(sys.exc_info()[1], (BrokenPipeError, ConnectionResetError)):
            return  # client went away
        super().handle_error(request, client_address)


class BrowserServer:
    """Owns the HTTP server and its background thread."""

    def __init__(self, config, store, source, host=None, port=None):
        self.host = host or config.get("host", "0.0.0.0")
        self._server = _BrowserHTTPServer(
            (self.host, config.get("port", 8080) if port is None else port),
            _BrowserHandler,
            config=config,
            store=store,
            source=source,
        )
        self._thread = None

    @property
    def port(self):
        return self._server.server_address[1]

    @property
    def url(self):
        host = "127.0.0.1" if self.host in ("0.0.0.0", "") else self.host
        return f"http://{host}:{self.port}"

    def start(self):
        """Serve in a background daemon thread."""
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="rbrowse-http",
        )
        self._thread.start()

    def serve_forever(self):
        self._server.serve_forever()

    def stop(self):
        """Cancel running restic calls, shut down and close the socket."""
        self._server.cancel.set()
        if self._thread is not None:
            self._server.shutdown()
            self._thread.join()
            self._thread = None
        self._server.server_close()
