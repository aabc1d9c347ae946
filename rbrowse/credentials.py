import os
from pathlib import Path

from dotenv import dotenv_values

from rbrowse.config import HOME_DIR

CREDENTIALS_FILE = HOME_DIR / "credentials"
PASSWORD_VAR_PREFIX = "RESTIC_PASSWORD_"


def password_var(repo_id):
    """Name of the per-repository password variable, e.g. RESTIC_PASSWORD_SRV002."""
    return f"{PASSWORD_VAR_PREFIX}{repo_id.strip().upper()}"


def load_credentials(path=None):
    """Read ~/.rbrowse/credentials (KEY=VALUE lines, # comments allowed).

    Unlike a project .env these values are never exported into os.environ;
    restic only sees the one password that belongs to the repository it runs
    against.
    """
    path = Path(path) if path else CREDENTIALS_FILE
    if not path.exists():
        return {}
    return {k: v for k, v in dotenv_values(path).items() if v}


def save_credential(key, value, path=None):
    """Save or update a single credential. The file is kept at mode 0600."""
    path = Path(path) if path else CREDENTIALS_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.parent.chmod(0o700)

    lines = []
    found = False
    if path.exists():
        for line in path.read_text().splitlines():
            stripped = line.strip()
            if stripped and not stripped.startswith("#") and "=" in stripped:
                k = stripped.split("=", 1)[0].strip()
                if k == key:
                    lines.append(f"{key}={value}")
                    found = True
                    continue
            lines.append(line)

    if not found:
        lines.append(f"{key}={value}")

    path.write_text("\n".join(lines) + "\n")
    path.chmod(0o600)
    return path


def resolve_password(repo_id, path=None, environ=None):
    """Password for repo_id from the credentials file, then the environment."""
    environ = os.environ if environ is None else environ
    var = password_var(repo_id)
    return load_credentials(path).get(var) or environ.get(var, "")
