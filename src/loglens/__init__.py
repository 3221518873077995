"""loglens: self-hosted log analytics and anomaly detection."""

from loglens.adapters.frameworks.asgi import create_asgi_app
from loglens.adapters.logging import EventStoreHandler
from loglens.adapters.notify import InMemoryChannel, LoggingChannel, WebhookChannel
from loglens.adapters.storage import InMemoryEventStore, SQLiteEventStore
from loglens.core.alerts import AlertDispatcher, anomaly_rule
from loglens.core.anomaly import AnomalyDetector, BaselineStore
from loglens.core.cache import QueryCache
from loglens.core.cancellation import CancellationToken
from loglens.core.config import EngineConfig, load_config
from loglens.core.events import critical, error, event, info, warning
from loglens.core.exceptions import (
    InvalidRangeError,
    LoglensError,
    OperationTimeoutError,
    OutOfOrderBucketError,
    PipelineError,
    QueryCancelledError,
    TransientStorageError,
    ValidationError,
)
from loglens.core.ingestion import IngestionBuffer
from loglens.core.models import (
    AlertEvent,
    AlertRule,
    AnomalyRecord,
    Bucket,
    Decision,
    Event,
    Level,
    RetentionPolicy,
    TimeRange,
)
from loglens.core.pipeline import (
    Extract,
    Filter,
    Limit,
    OrderBy,
    Pipeline,
    Project,
    Summarize,
    parse_pipeline,
)
from loglens.core.ports import EventStoragePort, NotificationChannelPort
from loglens.core.predicates import AllOf, AnyOf, Condition, Not, parse_predicate
from loglens.core.query import QueryEngine
from loglens.core.windower import window
from loglens.runtime import EmbeddedRuntime
from loglens.service import AnalyticsService

__all__ = [
    # Models
    "AlertEvent",
    "AlertRule",
    "AnomalyRecord",
    "Bucket",
    "Decision",
    "Event",
    "Level",
    "RetentionPolicy",
    "TimeRange",
    # Errors
    "InvalidRangeError",
    "LoglensError",
    "OperationTimeoutError",
    "OutOfOrderBucketError",
    "PipelineError",
    "QueryCancelledError",
    "TransientStorageError",
    "ValidationError",
    # Ports
    "EventStoragePort",
    "NotificationChannelPort",
    # Pipelines
    "AllOf",
    "AnyOf",
    "Condition",
    "Extract",
    "Filter",
    "Limit",
    "Not",
    "OrderBy",
    "Pipeline",
    "Project",
    "Summarize",
    "parse_pipeline",
    "parse_predicate",
    "window",
    # Engine
    "AlertDispatcher",
    "AnalyticsService",
    "AnomalyDetector",
    "BaselineStore",
    "CancellationToken",
    "EngineConfig",
    "IngestionBuffer",
    "QueryCache",
    "QueryEngine",
    "anomaly_rule",
    "load_config",
    # Event helpers
    "critical",
    "error",
    "event",
    "info",
    "warning",
    # Adapters
    "EmbeddedRuntime",
    "EventStoreHandler",
    "InMemoryChannel",
    "InMemoryEventStore",
    "LoggingChannel",
    "SQLiteEventStore",
    "WebhookChannel",
    "create_asgi_app",
]
