"""
Error Taxonomy
==============

[ERRORS] Every failure the core can observe maps to one of these classes.
Network and protocol errors are handled where they happen (logged, the
affected unit of work stalls or is skipped). Only ConfigOrKeyError and
InvalidURLError end the process with a non-zero status.
"""

from typing import Sequence


class GitTorrentError(Exception):
    """Base class for gittorrent errors."""
    pass


class ConfigOrKeyError(GitTorrentError):
    """Configuration or key file cannot be loaded. Fatal at startup."""
    pass


class DirectoryTooLarge(GitTorrentError):
    """Encoded directory does not fit into a DHT mutable record."""

    def __init__(self, size: int, limit: int):
        super().__init__(f"Directory payload is {size} bytes, limit is {limit}")
        self.size = size
        self.limit = limit


class MalformedDirectory(GitTorrentError):
    """DHT record does not decode to a repository directory."""
    pass


class DirectoryNotFound(GitTorrentError):
    """No record under the key, or no such repository in the directory."""
    pass


class LookupFailure(GitTorrentError):
    """DHT peer lookup failed for an object id."""
    pass


class UnknownObjectRequested(GitTorrentError):
    """A peer asked for an object id that this node never announced."""
    pass


class SubprocessFailure(GitTorrentError):
    """A git subprocess exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int):
        super().__init__(f"{' '.join(command)} exited with code {returncode}")
        self.command = list(command)
        self.returncode = returncode


class TransferError(GitTorrentError):
    """Transfer engine could not seed or download."""
    pass


class DHTError(GitTorrentError):
    """DHT engine refused an operation."""
    pass


class InvalidURLError(GitTorrentError):
    """Remote URL handed over by git cannot be used."""
    pass
