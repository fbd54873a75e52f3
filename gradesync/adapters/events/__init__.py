"""Change-event sources - abstracts over the push transport."""

from gradesync.adapters.events.base import AbstractChangeSource
from gradesync.adapters.events.in_memory import InMemoryChangeFeed

__all__ = [
    "AbstractChangeSource",
    "InMemoryChangeFeed",
]
