"""Dewey keeps a search index consistent with a hierarchical data store."""

from __future__ import annotations

from dewey.dispatch import Dispatcher, Skip, resolve
from dewey.events import ChangeEvent, RoutingKey

__all__ = [
    "ChangeEvent",
    "Dispatcher",
    "RoutingKey",
    "Skip",
    "resolve",
]
