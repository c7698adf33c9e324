"""
gittorrent
==========

Decentralized git: repositories are published as a signed directory in the
DHT, objects are found through DHT announcements and packs move between
peers over a torrent swarm.

- daemon:         publish cycle and pack serving (``gittorrentd``)
- remote_helper:  ``git-remote-gittorrent`` for ``gittorrent://`` URLs
- directory:      directory codec, publisher and resolver
- wire/extension: peer wire protocol and the ut_gittorrent extension
- fetch/provider: both ends of a pack exchange
"""

__version__ = "0.1.0"

from .errors import (
    GitTorrentError,
    ConfigOrKeyError,
    DirectoryTooLarge,
    MalformedDirectory,
    DirectoryNotFound,
    LookupFailure,
    UnknownObjectRequested,
    SubprocessFailure,
    TransferError,
    DHTError,
    InvalidURLError,
)
from .crypto import KeyPair
from .directory import (
    DirectoryPublisher,
    DirectoryResolver,
    RecordHandle,
    decode_directory,
    encode_directory,
)
from .fetch import FetchOrchestrator, normalize_branch
from .provider import AnnouncedObject, PackProvider

__all__ = [
    "__version__",
    "GitTorrentError",
    "ConfigOrKeyError",
    "DirectoryTooLarge",
    "MalformedDirectory",
    "DirectoryNotFound",
    "LookupFailure",
    "UnknownObjectRequested",
    "SubprocessFailure",
    "TransferError",
    "DHTError",
    "InvalidURLError",
    "KeyPair",
    "DirectoryPublisher",
    "DirectoryResolver",
    "RecordHandle",
    "decode_directory",
    "encode_directory",
    "FetchOrchestrator",
    "normalize_branch",
    "AnnouncedObject",
    "PackProvider",
]
