"""
DHT Module
==========

- DHT: interface the core uses (ready, announce, lookup, get, put, peer events)
- SignedRecord: BEP 44 style signed mutable item
- DHTStorage: SQLite store of records and announcements
- LocalDHT: engine backed by a shared DHTStorage file
"""

from .record import SignedRecord, target_for, signing_data
from .base import DHT
from .storage import DHTStorage
from .local import LocalDHT

__all__ = [
    "DHT",
    "SignedRecord",
    "target_for",
    "signing_data",
    "DHTStorage",
    "LocalDHT",
]
