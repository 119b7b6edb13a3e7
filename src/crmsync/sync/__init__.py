"""Pipedrive synchronization: reconciliation, orchestrators and bulk sync.

Exports the components the API layer wires per request.
"""

from src.crmsync.sync.activities import ActivityReplicator
from src.crmsync.sync.batch import BatchItem, BatchSummary, BatchUpdateService
from src.crmsync.sync.bulk import BulkSyncRunner, SyncRegistry
from src.crmsync.sync.channel import (
    InMemoryProgressChannel,
    ProgressChannel,
    RedisProgressChannel,
    format_sse,
)
from src.crmsync.sync.errors import SyncConfigurationError, SyncConnectionError
from src.crmsync.sync.lifecycle import ContactLifecycle
from src.crmsync.sync.progress import ProgressEvent, ProgressEventType, SyncProgressState
from src.crmsync.sync.reconcile import KeyedLocks, OrganizationReconciler, PersonReconciler
from src.crmsync.sync.warm_leads import LeadState, WarmLeadPromoter

__all__ = [
    "ActivityReplicator",
    "BatchItem",
    "BatchSummary",
    "BatchUpdateService",
    "BulkSyncRunner",
    "ContactLifecycle",
    "InMemoryProgressChannel",
    "KeyedLocks",
    "LeadState",
    "OrganizationReconciler",
    "PersonReconciler",
    "ProgressChannel",
    "ProgressEvent",
    "ProgressEventType",
    "RedisProgressChannel",
    "SyncConfigurationError",
    "SyncConnectionError",
    "SyncProgressState",
    "SyncRegistry",
    "WarmLeadPromoter",
    "format_sse",
]
