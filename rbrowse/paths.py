"""Canonical snapshot paths.

Two forms cross every boundary in rbrowse:

    directory form  "/", "/etc/", "/etc/nginx/"   (absolute, trailing slash)
    file form       "/etc/hosts"                    (absolute, no trailing slash)

Nothing here does I/O. Only check_safe() rejects input; the other helpers
assume the value has already been through it.
"""

from rbrowse.errors import InvalidPathError

ROOT = "/"
NO_PARENT = ""

DEFAULT_ARCHIVE_NAME = "folder"
DEFAULT_DOWNLOAD_NAME = "download.bin"


def check_safe(value):
    """Reject parent references and NUL bytes. Returns the value unchanged."""
    value = value or ""
    if "\x00" in value:
        raise InvalidPathError(value, "path contains a NUL byte")
    for segment in value.replace("\\", "/").split("/"):
        if segment == "..":
            raise InvalidPathError(value, "path contains a parent reference")
    return value


def normalize_dir(value):
    if not value:
        return ROOT
    if not value.startswith("/"):
        value = "/" + value
    if value != ROOT and not value.endswith("/"):
        value += "/"
    return value


def normalize_file(value):
    return "/" + (value or "").strip("/")


def parent_of(dir_path):
    """Parent directory in directory form, or NO_PARENT for the root."""
    dir_path = normalize_dir(dir_path)
    trimmed = dir_path.strip("/")
    if not trimmed:
        return NO_PARENT
    parts = trimmed.split("/")
    if len(parts) <= 1:
        return ROOT
    return "/" + "/".join(parts[:-1]) + "/"


def breadcrumbs(dir_path):
    """[(label, path), ...] from the root down to dir_path."""
    crumbs = [(ROOT, ROOT)]
    trimmed = normalize_dir(dir_path).strip("/")
    if not trimmed:
        return crumbs
    current = ""
    for part in trimmed.split("/"):
        current += "/" + part
        crumbs.append((part, current + "/"))
    return crumbs


def rebase(entry_path, export_root):
    """Archive entry name for entry_path found while exporting export_root."""
    root = normalize_dir(export_root)
    if root != ROOT and entry_path.startswith(root):
        entry_path = entry_path[len(root):]
    return entry_path.lstrip("/")


def archive_filename(export_root):
    root = normalize_dir(export_root)
    if root == ROOT:
        return DEFAULT_ARCHIVE_NAME + ".zip"
    name = root.strip("/").split("/")[-1].strip()
    return (name or DEFAULT_ARCHIVE_NAME) + ".zip"


def download_filename(file_path):
    name = (file_path or "").rstrip("/").split("/")[-1]
    if name in ("", "."):
        return DEFAULT_DOWNLOAD_NAME
    return name


# Local repository-root browsing works with relative paths ("" is the root).

def join_rel(rel, name):
    if not rel:
        return name
    return rel + "/" + name


def parent_rel(rel):
    """Return (parent, show_parent) for a relative directory path."""
    trimmed = (rel or "").strip("/")
    if not trimmed:
        return "", False
    parts = trimmed.split("/")
    if len(parts) <= 1:
        return "", True
    return "/".join(parts[:-1]), True
