from sentineltrack.services.storage_service import StorageService, StorageSnapshot
from sentineltrack.services.dedup_service import deduplicate, dedup_processes, dedup_connections
from sentineltrack.services.classifier_service import ClassifierService, ClassifierThresholds
from sentineltrack.services.aggregator_service import AggregatorService
from sentineltrack.services.broadcast_service import BroadcastService, Subscriber
from sentineltrack.services.event_log_service import EventLogService
from sentineltrack.services.ingest_service import IngestService, IngestResult
from sentineltrack.services.monitor_service import MonitorService
from sentineltrack.services.query_service import QueryService

__all__ = [
    'StorageService',
    'StorageSnapshot',
    'deduplicate',
    'dedup_processes',
    'dedup_connections',
    'ClassifierService',
    'ClassifierThresholds',
    'AggregatorService',
    'BroadcastService',
    'Subscriber',
    'EventLogService',
    'IngestService',
    'IngestResult',
    'MonitorService',
    'QueryService',
]
