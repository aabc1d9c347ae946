from datetime import datetime

from rbrowse.models import Node
from rbrowse.render import format_size, render_browse, render_config, render_error, render_files
from rbrowse.repos import Binding

BINDING = Binding(id="SRV001", path="/repo/srv001", password="pw")


def test_error_page_escapes_message():
    page = render_error(404, "no such file: <b>x</b>")
    assert "<b>x</b>" not in page
    assert "&lt;b&gt;x&lt;/b&gt;" in page
    assert "<title>Error 404 · rbrowse</title>" in page


def test_files_escapes_names_and_encodes_links():
    entries = [{
        "name": '"><img src=x>', "rel_path": "a&b", "is_dir": True, "size": None,
        "modified": datetime(2024, 1, 2, 3, 4), "is_repo": False, "repo_id": "",
    }]
    page = render_files("", "", False, entries)

    assert "<img" not in page
    assert "/files?path=a%26b" in page
    assert "2024-01-02 03:04" in page


def test_files_offers_configure_link_for_unbound_repository():
    entries = [{"name": "srv002", "rel_path": "srv002", "is_dir": True, "size": None,
                "modified": None, "is_repo": True, "repo_id": ""}]
    page = render_files("", "", False, entries)
    assert "/config?id=SRV002&amp;path=srv002" in page


def test_browse_links_carry_snapshot_and_path():
    nodes = [
        Node(name="a b.txt", path="/docs/a b.txt", type="file", size=2048),
        Node(name="link", path="/docs/link", type="symlink"),
    ]
    page = render_browse(BINDING, "4f2a9c1e" * 8, "/docs/", "/", [("/", "/"), ("docs", "/docs/")], nodes)

    assert "/repositories/srv001/download?snap=" in page
    assert "path=%2Fdocs%2Fa+b.txt" in page
    assert "2.0 KiB" in page
    assert "(symlink)" in page
    assert "<title>SRV001 · 4f2a9c1e · rbrowse</title>" in page


def test_config_form_never_prefills_password():
    page = render_config("SRV001", "/repo/srv001", no_lock=False, error="Path must be inside /repo.")
    assert 'name="password" type="password">' in page
    assert "checked" not in page
    assert "must be inside /repo." in page


def test_format_size():
    assert format_size(None) == ""
    assert format_size(12) == "12 B"
    assert format_size(1536) == "1.5 KiB"
