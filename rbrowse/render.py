"""HTML pages for the browser.

Pages are Jinja2 templates under rbrowse/templates/ with autoescaping on, so
names coming from a repository or from restic never reach the markup raw.
"""

from pathlib import Path
from urllib.parse import quote, urlencode

from jinja2 import Environment, FileSystemLoader, select_autoescape

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


def _qs(values):
    """Query string from a dict, dropping empty values."""
    return urlencode({k: v for k, v in values.items() if v})


def _when(value, fmt="%Y-%m-%d %H:%M"):
    return value.strftime(fmt) if value else ""


def repo_url(repo_id, action=""):
    url = f"/repositories/{quote(repo_id.lower())}"
    return f"{url}/{action}" if action else url


def format_size(size):
    if size is None:
        return ""
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if value < 1024 or unit == "TiB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024


env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html", "xml"]),
)
env.filters["qs"] = _qs
env.filters["size"] = format_size
env.filters["when"] = _when
env.globals["repo_url"] = repo_url


def _render(name, title, **context):
    return env.get_template(name).render(title=title, **context)


def render_error(status, message):
    return _render("error.html", f"Error {status}", message=message)


def render_files(rel_path, parent, show_parent, entries):
    """Listing of the local repository root.

    entries: dicts with name, rel_path, is_dir, size, modified, repo_id, is_repo.
    """
    return _render("files.html", "Files", rel_path=rel_path, parent=parent,
                   show_parent=show_parent, entries=entries)


def render_snapshots(binding, snapshots):
    return _render("snapshots.html", f"Repository {binding.id}", binding=binding, snapshots=snapshots)


def render_browse(binding, snap, path, parent, crumbs, nodes):
    return _render("browse.html", f"{binding.id} · {snap[:8]}", binding=binding, snap=snap,
                   path=path, parent=parent, crumbs=crumbs, nodes=nodes)


def render_config(repo_id="", path="", no_lock=True, error=""):
    """Repository form. The password field is never pre-filled."""
    return _render("config.html", "Configure Repository", repo_id=repo_id, path=path,
                   no_lock=no_lock, error=error)
