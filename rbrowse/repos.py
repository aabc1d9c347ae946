"""Repository bindings: which restic repository an identifier points at.

Bindings live in a JSON file (default ~/.rbrowse/repositories.json) that is
loaded once at startup and handed to the server and CLI as a
RepositoryStore. The file holds passwords, so it is written with mode 0600.
"""

import json
import os
import re
import threading
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path

from rbrowse.credentials import resolve_password
from rbrowse.errors import RepositoryConfigError, UnknownRepositoryError

_ID_RE = re.compile(r"^[A-Z0-9][A-Z0-9_.-]*$")
_REPO_MARKERS = ("data", "index", "keys")


@dataclass(frozen=True)
class Binding:
    id: str
    path: str
    password: str = field(default="", repr=False)
    password_file: str = ""
    no_lock: bool = True
    created_at: str = ""
    updated_at: str = ""


def normalize_id(repo_id):
    return (repo_id or "").strip().upper()


def is_restic_repo_root(directory):
    """A restic repository has a config file next to data/, index/ and keys/."""
    directory = Path(directory)
    if not (directory / "config").is_file():
        return False
    return all((directory / d).is_dir() for d in _REPO_MARKERS)


def is_within(location, root):
    """True if location is root itself or lies below it."""
    location, root = os.path.abspath(location), os.path.abspath(root)
    return os.path.commonpath([location, root]) == root


def _now():
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class RepositoryStore:
    """Identifier → Binding table backed by a JSON file."""

    def __init__(self, path, repo_root="/repo", credentials_file=None):
        self.path = Path(path)
        self.repo_root = os.path.normpath(repo_root)
        self.credentials_file = credentials_file
        self._repos = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config):
        return cls(config["repositories_file"], config.get("repo_root", "/repo")).load()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self):
        repos = {}
        if self.path.exists():
            try:
                raw = json.loads(self.path.read_text())
            except json.JSONDecodeError as e:
                raise RepositoryConfigError(f"Invalid JSON in {self.path}: {e}") from e
            if not isinstance(raw, dict):
                raise RepositoryConfigError(f"{self.path} must contain a JSON object")
            for item in raw.get("repositories", []):
                try:
                    binding = Binding(**item)
                except TypeError as e:
                    raise RepositoryConfigError(f"Invalid repository entry in {self.path}: {e}") from e
                repos[normalize_id(binding.id)] = binding
        with self._lock:
            self._repos = repos
        return self

    reload = load

    def _save(self):
        payload = {"repositories": [asdict(b) for b in sorted(self._repos.values(), key=lambda b: b.id)]}
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(mode=0o600, exist_ok=True)
        self.path.chmod(0o600)
        self.path.write_text(json.dumps(payload, indent=2) + "\n")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, repo_id):
        """Binding for repo_id with its password resolved, or None."""
        with self._lock:
            binding = self._repos.get(normalize_id(repo_id))
        if binding is None:
            return None
        if not binding.password and not binding.password_file:
            binding = replace(binding, password=resolve_password(binding.id, self.credentials_file))
        return binding

    def require(self, repo_id):
        binding = self.get(repo_id)
        if binding is None:
            raise UnknownRepositoryError(repo_id)
        return binding

    def list(self):
        with self._lock:
            return sorted(self._repos.values(), key=lambda b: b.id)

    def find_by_path(self, directory):
        """Binding whose location is exactly directory, or None."""
        target = os.path.normpath(str(directory))
        for binding in self.list():
            if os.path.normpath(binding.path) == target:
                return self.get(binding.id)
        return None

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def resolve_location(self, path):
        """Place a relative location under repo_root and normalize it."""
        path = (path or "").strip()
        if path and not path.startswith("/"):
            path = os.path.join(self.repo_root, path)
        return os.path.normpath(path) if path else ""

    def validate(self, binding):
        repo_id = normalize_id(binding.id)
        location = self.resolve_location(binding.path)
        if not repo_id or not location:
            raise RepositoryConfigError("Please fill ID and Path.")
        if not _ID_RE.match(repo_id):
            raise RepositoryConfigError(
                f"ID {repo_id!r} may only contain letters, digits, '.', '_' and '-'."
            )
        if not is_within(location, self.repo_root):
            raise RepositoryConfigError(f"Path must be inside {self.repo_root}.")
        if not (binding.password or binding.password_file
                or resolve_password(repo_id, self.credentials_file)):
            raise RepositoryConfigError("Please provide a password or a password file.")
        return replace(binding, id=repo_id, path=location)

    def upsert(self, binding):
        """Insert or update a binding. Returns the stored Binding."""
        binding = self.validate(binding)
        now = _now()
        with self._lock:
            existing = self._repos.get(binding.id)
            created = existing.created_at if existing else now
            binding = replace(binding, created_at=created, updated_at=now)
            self._repos[binding.id] = binding
            self._save()
        return binding

    def remove(self, repo_id):
        """Delete a binding. Returns False if it did not exist."""
        with self._lock:
            removed = self._repos.pop(normalize_id(repo_id), None)
            if removed is not None:
                self._save()
        return removed is not None
