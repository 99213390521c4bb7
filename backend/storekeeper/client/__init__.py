"""
Offline sync client.

A device keeps its local writes in a SyncQueue (persisted as JSON) and
reconciles them with the server through SyncClient over HTTP.
"""

from .sync_client import SyncClient, SyncClientError
from .sync_queue import SyncItem, SyncQueue

__all__ = ["SyncClient", "SyncClientError", "SyncItem", "SyncQueue"]
