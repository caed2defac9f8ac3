"""
Storage module for Rulesmith.

In-memory stores hold the live template and extension registries; the
SQLite database persists extension records so a registry can be reloaded.

Stores:
    - TemplateStore: Registered templates keyed by id
    - ExtensionStore: Extension registry entries keyed by id
    - ExtensionDB: SQLite persistence with checksum verification on reload
"""

from rulesmith.store.db import ExtensionDB, compute_hash, generate_id, now_iso
from rulesmith.store.registry import ExtensionStore, KeyedStore, TemplateStore

__all__ = [
    "ExtensionDB",
    "ExtensionStore",
    "KeyedStore",
    "TemplateStore",
    "compute_hash",
    "generate_id",
    "now_iso",
]
