from abc import ABC, abstractmethod


class SnapshotSource(ABC):
    """Read-only access to the snapshots of a backup repository.

    Implementations: ResticSource (shells out to the restic binary).

    Every call takes the repository binding to operate on and an optional
    ``cancel`` threading.Event. Setting the event aborts the call with
    OperationCancelledError and releases whatever the call was holding.
    """

    @abstractmethod
    def list_snapshots(self, binding, cancel=None):
        """Return all snapshots, newest first."""
        pass

    @abstractmethod
    def list_directory(self, binding, snapshot_id, dir_path, cancel=None):
        """Return the Nodes directly under dir_path, in no particular order.

        The result may include a node for dir_path itself.
        """
        pass

    @abstractmethod
    def dump_file(self, binding, snapshot_id, file_path, sink, cancel=None):
        """Stream the content of file_path into sink. Returns bytes written."""
        pass
