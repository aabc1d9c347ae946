"""Error taxonomy shared by the CLI, the HTTP server and the export engine."""


class RbrowseError(Exception):
    """Base class for every error rbrowse raises on purpose."""


class InvalidPathError(RbrowseError):
    """A user-supplied path failed traversal validation."""

    def __init__(self, path, reason="invalid path"):
        super().__init__(f"{reason}: {path!r}")
        self.path = path


class UnknownRepositoryError(RbrowseError):
    """No repository binding is configured for the identifier."""

    def __init__(self, repo_id):
        super().__init__(f"Unknown repository: {repo_id!r}")
        self.repo_id = repo_id


class RepositoryConfigError(RbrowseError):
    """A repository binding was rejected by the store."""


class ExternalToolError(RbrowseError):
    """The snapshot tool exited non-zero, timed out or could not be started."""

    _MAX_LINES = 8

    def __init__(self, command, returncode=None, stderr=""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr or ""
        detail = self.stderr.strip() or "no diagnostic output"
        lines = detail.splitlines()
        if len(lines) > self._MAX_LINES:
            detail = "\n".join(lines[: self._MAX_LINES]) + "\n..."
        if returncode is None:
            super().__init__(f"{command} failed: {detail}")
        else:
            super().__init__(f"{command} exited with status {returncode}: {detail}")


class MalformedOutputError(RbrowseError):
    """The snapshot tool produced output that could not be decoded."""


class OperationCancelledError(RbrowseError):
    """The caller cancelled the operation; the external process was terminated."""


class ExportAbortedError(RbrowseError):
    """An export failed after the archive was opened on the sink.

    Bytes may already have reached the caller, so the output must be treated
    as incomplete. The underlying error is available as ``cause``.
    """

    def __init__(self, root, cause):
        super().__init__(f"Export of {root} aborted: {cause}")
        self.root = root
        self.cause = cause


class InvalidSnapshotIdError(RbrowseError):
    """A user-supplied snapshot ID is not a hex ID or "latest"."""

    def __init__(self, snapshot_id):
        super().__init__(f"invalid snapshot ID: {snapshot_id!r}")
        self.snapshot_id = snapshot_id
