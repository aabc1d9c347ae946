from rbrowse.source.base import SnapshotSource
from rbrowse.source.restic import ResticSource


def create_source(config=None):
    """Create a snapshot source from config.

    Config keys:
        source_backend: "restic" (default)
        restic_binary, cache_dir, command_timeout: passed to ResticSource
    """
    config = config or {}
    backend = config.get("source_backend", "restic")

    if backend == "restic":
        return ResticSource(
            binary=config.get("restic_binary") or "restic",
            cache_dir=config.get("cache_dir") or "",
            timeout=config.get("command_timeout") or None,
        )

    raise ValueError(f"Unknown source backend: {backend!r}. Use 'restic'.")


__all__ = ["SnapshotSource", "ResticSource", "create_source"]
