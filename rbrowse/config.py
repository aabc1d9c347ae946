import json
import os
from pathlib import Path

HOME_DIR = Path(os.environ.get("RBROWSE_HOME") or Path.home() / ".rbrowse")
GLOBAL_CONFIG_FILE = HOME_DIR / "config.json"

DEFAULT_CONFIG = {
    "source_backend": "restic",
    "restic_binary": "restic",
    "repo_root": "/repo",
    "cache_dir": "",
    "command_timeout": 600,
    "default_no_lock": True,
    "host": "0.0.0.0",
    "port": 8080,
    "auth_user": "",
    "auth_pass": "",
    # Optional: "repositories_file": "/etc/rbrowse/repositories.json"
}

# (config key, environment variable)
ENV_OVERRIDES = [
    ("restic_binary", "RESTIC_BINARY"),
    ("repo_root", "RBROWSE_REPO_ROOT"),
    ("cache_dir", "RESTIC_CACHE_DIR"),
    ("default_no_lock", "RESTIC_NO_LOCK"),
    ("host", "RBROWSE_HOST"),
    ("port", "RBROWSE_PORT"),
    ("auth_user", "BASIC_AUTH_USER"),
    ("auth_pass", "BASIC_AUTH_PASS"),
]

_TRUE = ("1", "true", "yes", "on")


def parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE


def load_global_config(path=None):
    """Load ~/.rbrowse/config.json. Missing file means no overrides."""
    path = Path(path) if path else GLOBAL_CONFIG_FILE
    if not path.exists():
        return {}
    try:
        raw = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e}")
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return raw


def save_global_config(updates, path=None):
    """Merge updates into ~/.rbrowse/config.json."""
    path = Path(path) if path else GLOBAL_CONFIG_FILE
    existing = load_global_config(path)
    existing.update(updates)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(existing, indent=2) + "\n")
    return path


def load_config(path=None, environ=None):
    # Merge order: defaults → global config → environment
    environ = os.environ if environ is None else environ
    config = {**DEFAULT_CONFIG, **load_global_config(path)}

    for key, var in ENV_OVERRIDES:
        value = environ.get(var, "").strip()
        if value:
            config[key] = value

    config["default_no_lock"] = parse_bool(config["default_no_lock"])
    for key in ("port", "command_timeout"):
        try:
            config[key] = int(config[key])
        except (TypeError, ValueError):
            raise ValueError(f"{key} must be an integer, got {config[key]!r}")

    config.setdefault("repositories_file", str(HOME_DIR / "repositories.json"))
    return config
