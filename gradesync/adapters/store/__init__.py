"""Record store adapters - abstracts over where authoritative records live."""

from gradesync.adapters.store.base import AbstractRecordStore
from gradesync.adapters.store.factory import create_record_store
from gradesync.adapters.store.http_client import HttpRecordStore
from gradesync.adapters.store.in_memory import InMemoryRecordStore

__all__ = [
    "AbstractRecordStore",
    "HttpRecordStore",
    "InMemoryRecordStore",
    "create_record_store",
]
