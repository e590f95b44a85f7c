"""
Infrastructure: settings, key-value stores, prometheus metrics and the kafka alert publisher.
"""

from reaction_shield.lib.config import Settings
from reaction_shield.lib.store import (
    KVStore,
    InMemoryStore,
    PostgresStore,
    StoreError,
    Keys,
    create_store,
)
from reaction_shield.lib.metrics import MetricsExporter

__all__ = [
    'Settings',
    'KVStore',
    'InMemoryStore',
    'PostgresStore',
    'StoreError',
    'Keys',
    'create_store',
    'MetricsExporter',
]
