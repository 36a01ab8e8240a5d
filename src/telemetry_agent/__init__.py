"""
Client-side telemetry pipeline: validate, queue durably, batch, and deliver
product events with bounded retries, a circuit breaker and a dead letter store.
"""

from .batcher import Batcher, FlushResult
from .dlq import DeadLetterStats, DeadLetterStore
from .errors import (
    AuthenticationError,
    BatchRejectedError,
    EventValidationError,
    TelemetryError,
    TransientTransportError,
    TransportError,
)
from .health import HealthBus, HealthSignal, HealthSignalKind
from .models import Batch, CircuitState, CircuitStatus, DeadLetterEntry, Event, Identity
from .pipeline import DeletionResult, Pipeline, PipelineHealth
from .policy import CircuitBreaker, RetryPolicy
from .queue import DurableQueue, QueueStats
from .retry import RetryManager, SendOutcome, SendResult
from .settings import PipelineSettings
from .storage import FileStorage, MemoryStorage, PersistenceAdapter
from .transport import Credentials, HttpTransport, Transport
from .validation import ValidationPolicy, validate_event

__version__ = "0.1.0"

__all__ = [
    "AuthenticationError",
    "Batch",
    "BatchRejectedError",
    "Batcher",
    "CircuitBreaker",
    "CircuitState",
    "CircuitStatus",
    "Credentials",
    "DeadLetterEntry",
    "DeadLetterStats",
    "DeadLetterStore",
    "DeletionResult",
    "DurableQueue",
    "Event",
    "EventValidationError",
    "FileStorage",
    "FlushResult",
    "HealthBus",
    "HealthSignal",
    "HealthSignalKind",
    "HttpTransport",
    "Identity",
    "MemoryStorage",
    "PersistenceAdapter",
    "Pipeline",
    "PipelineHealth",
    "PipelineSettings",
    "QueueStats",
    "RetryManager",
    "RetryPolicy",
    "SendOutcome",
    "SendResult",
    "TelemetryError",
    "TransientTransportError",
    "Transport",
    "TransportError",
    "ValidationPolicy",
    "validate_event",
]
