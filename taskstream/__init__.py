"""Public package surface for taskstream."""

from __future__ import annotations

from .accumulator import ContentAccumulator, MergeAction, classify_content, merge_content
from .cancellation import CancelHandle
from .collector import GarbageCollector
from .config import HttpProducerConfig, MergeSettings, TaskManagerConfig
from .decoder import StreamDecoder, decode_stream, decode_text, event_to_dict
from .errors import (
    GenerationError,
    InvalidTransitionError,
    StartTimeoutError,
    TaskNotFoundError,
    TaskStreamError,
    TransportError,
)
from .manager import TaskManager
from .models import (
    EventType,
    ResumeParams,
    StreamEvent,
    TaskKind,
    TaskRecordModel,
    TaskResult,
    TaskStatus,
)
from .producer import HttpProducer, Producer, StreamHandle
from .registry import TaskRegistry
from .runner import TaskCallbacks, TaskRunner
from .sse import encode_event, encode_record, iter_chunks
from .telemetry import (
    LoggingTaskOutcomeSink,
    NoOpTaskOutcomeSink,
    RecordingTaskOutcomeSink,
    TaskOutcomeEvent,
    TaskOutcomeSink,
)

__all__ = [
    "__version__",
    "CancelHandle",
    "ContentAccumulator",
    "EventType",
    "GarbageCollector",
    "GenerationError",
    "HttpProducer",
    "HttpProducerConfig",
    "InvalidTransitionError",
    "LoggingTaskOutcomeSink",
    "MergeAction",
    "MergeSettings",
    "NoOpTaskOutcomeSink",
    "Producer",
    "RecordingTaskOutcomeSink",
    "ResumeParams",
    "StartTimeoutError",
    "StreamDecoder",
    "StreamEvent",
    "StreamHandle",
    "TaskCallbacks",
    "TaskKind",
    "TaskManager",
    "TaskManagerConfig",
    "TaskNotFoundError",
    "TaskOutcomeEvent",
    "TaskOutcomeSink",
    "TaskRecordModel",
    "TaskRegistry",
    "TaskResult",
    "TaskRunner",
    "TaskStatus",
    "TaskStreamError",
    "TransportError",
    "classify_content",
    "decode_stream",
    "decode_text",
    "encode_event",
    "encode_record",
    "event_to_dict",
    "iter_chunks",
    "merge_content",
]

__version__ = "0.1.0"
