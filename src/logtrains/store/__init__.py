"""
Storage module for LogTrains.

This module persists captured command output as a directory of
independent, append-only record files (one capture per file).

Design principles:
    - Append-only: Entries are never modified, only removed by retention
    - Atomic: Each record appears all-or-nothing (write, then link into place)
    - Rebuildable: The listing is a directory scan; there is no index file
    - Lazy: Metadata is listed cheaply, bodies are loaded on demand
"""

from logtrains.store.entries import EntryStore, encode_record, entry_filename

__all__ = [
    "EntryStore",
    "encode_record",
    "entry_filename",
]
