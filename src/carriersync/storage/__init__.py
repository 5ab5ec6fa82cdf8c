"""carriersync storage layer: async SQLite staging tables, work queues and the continuation queue."""

from carriersync.storage.database import Database
from carriersync.storage.models import (
    CarrierCredentials,
    DeviceDetail,
    DeviceRecord,
    MissingDevice,
    ServiceProvider,
    StagedDevice,
    SyncRun,
    WorkQueueRow,
)
from carriersync.storage.queue import ContinuationQueue, QueueError, QueueMessage, QueueSet

__all__ = [
    "CarrierCredentials",
    "ContinuationQueue",
    "Database",
    "DeviceDetail",
    "DeviceRecord",
    "MissingDevice",
    "QueueError",
    "QueueMessage",
    "QueueSet",
    "ServiceProvider",
    "StagedDevice",
    "SyncRun",
    "WorkQueueRow",
]
