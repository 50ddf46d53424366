"""bpmn_collab: event-sourced command pipeline for collaborative BPMN editing."""

from .config import CollabConfig, load
from .delivery import CommandQueue, DeliveryOutcome, DeliveryStatus
from .document import DocumentProjection, check_document, create_template
from .exceptions import (
    AggregateNotFoundError,
    CollabError,
    CollabErrorCodes,
    ConcurrencyConflictError,
    ConfigError,
    DeliveryFailedError,
    DocumentRejectedError,
    DuplicateElementError,
    DuplicateSnapshotError,
    EventStoreError,
    IncompatibleConnectionError,
    InvalidDocumentError,
    PayloadTooLargeError,
    ReferenceNotFoundError,
    SnapshotNotFoundError,
    TooManyElementsError,
    TranslationError,
    ValidationFailedError,
)
from .feed import EventFeed, StoreEventFeed
from .graph import GraphEdge, GraphNode, StructuralGraph
from .http_client import HttpEventFeed, HttpEventStore
from .logger import new_logger
from .memory import InMemoryEventStore, InMemorySnapshotStore
from .models import (
    Aggregate,
    AppendResult,
    Command,
    CommandOrigin,
    CommandType,
    ConnectionType,
    ElementKind,
    Event,
    EventPage,
    EventType,
    SaveResult,
    Snapshot,
    SnapshotView,
)
from .pipeline import EditingPipeline, SubmissionResult, SubmissionStatus
from .projection import AnomalyKind, OrderingPolicy, ProjectionAnomaly, ProjectionEngine
from .service import CollaborationService
from .store import EventStore, SnapshotStore
from .sync import SyncClient
from .translator import CommandTranslator, Ignored, IgnoreReason, Translated
from .validator import CommandValidator, ValidationResult

__all__ = [
    "Aggregate",
    "AggregateNotFoundError",
    "AnomalyKind",
    "AppendResult",
    "CollabConfig",
    "CollabError",
    "CollabErrorCodes",
    "CollaborationService",
    "Command",
    "CommandOrigin",
    "CommandQueue",
    "CommandTranslator",
    "CommandType",
    "CommandValidator",
    "ConcurrencyConflictError",
    "ConfigError",
    "ConnectionType",
    "DeliveryFailedError",
    "DeliveryOutcome",
    "DeliveryStatus",
    "DocumentProjection",
    "DocumentRejectedError",
    "DuplicateElementError",
    "DuplicateSnapshotError",
    "EditingPipeline",
    "ElementKind",
    "Event",
    "EventFeed",
    "EventPage",
    "EventStore",
    "EventStoreError",
    "EventType",
    "GraphEdge",
    "GraphNode",
    "HttpEventFeed",
    "HttpEventStore",
    "Ignored",
    "IgnoreReason",
    "InMemoryEventStore",
    "InMemorySnapshotStore",
    "IncompatibleConnectionError",
    "InvalidDocumentError",
    "OrderingPolicy",
    "PayloadTooLargeError",
    "ProjectionAnomaly",
    "ProjectionEngine",
    "ReferenceNotFoundError",
    "SaveResult",
    "Snapshot",
    "SnapshotNotFoundError",
    "SnapshotStore",
    "SnapshotView",
    "StoreEventFeed",
    "StructuralGraph",
    "SubmissionResult",
    "SubmissionStatus",
    "SyncClient",
    "TooManyElementsError",
    "Translated",
    "TranslationError",
    "ValidationFailedError",
    "ValidationResult",
    "check_document",
    "create_template",
    "load",
    "new_logger",
]
