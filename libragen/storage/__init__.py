"""
libragen.storage: the single-file library format.

Modules
-------
schema      Table definitions, version marker, ordered upgrade steps
store       LibraryStore: create/open, append, vector + lexical retrieval
migrations  MigrationRunner: detect and upgrade older files
"""

from .migrations import MigrationResult, MigrationRunner, migrate_if_needed
from .schema import CURRENT_SCHEMA_VERSION
from .store import LibraryStore, ScoredChunk

__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "LibraryStore",
    "MigrationResult",
    "MigrationRunner",
    "ScoredChunk",
    "migrate_if_needed",
]
