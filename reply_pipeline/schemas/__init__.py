from .circuit import CircuitSnapshot, CircuitState
from .dead_letter import DeadLetterEntry, DeadLetterListResponse
from .events import PipelineEvent
from .lock import ProcessingLock
from .message import InboundMessage, TaskEnvelope
from .routing import Lane, LanePriority, QueueRoute, RouteReason, build_routing_key

__all__ = [
    "CircuitSnapshot",
    "CircuitState",
    "DeadLetterEntry",
    "DeadLetterListResponse",
    "InboundMessage",
    "Lane",
    "LanePriority",
    "PipelineEvent",
    "ProcessingLock",
    "QueueRoute",
    "RouteReason",
    "TaskEnvelope",
    "build_routing_key",
]
