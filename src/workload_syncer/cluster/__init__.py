"""Cluster clients: the shared contract, an HTTP client and an in-memory store."""
from .base import ClusterClient, WatchEvent, WatchEventType, format_selector, matches_selector
from .http import HttpClusterClient
from .memory import InMemoryCluster

__all__ = [
    "ClusterClient",
    "WatchEvent",
    "WatchEventType",
    "matches_selector",
    "format_selector",
    "HttpClusterClient",
    "InMemoryCluster",
]
